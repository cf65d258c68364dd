"""
EdgeCache gateway routers.
"""
