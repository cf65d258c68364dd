"""
EdgeCache gateway - tours router.

A module-guarded catalog fronted by the response cache: listing and detail
reads are cached under the ``tours`` tag, writes purge it.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from ...shared.logging_config import get_logger
from ...shared.schemas import api_error, api_success
from ..dependencies import module_guard
from ..middleware import cache_response, clear_cache_by_tags

logger = get_logger(__name__, 'tours_router')

router = APIRouter(dependencies=[Depends(module_guard("tours"))])


class TourCreate(BaseModel):
    """Tour creation payload."""
    name: str = Field(..., min_length=1)
    destination: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)


class TourCatalog:
    """In-memory tour collection."""

    def __init__(self, tours: Optional[List[Dict[str, Any]]] = None):
        self.tours: List[Dict[str, Any]] = list(tours or [])

    def list(self, destination: Optional[str] = None) -> List[Dict[str, Any]]:
        if destination is None:
            return list(self.tours)
        return [tour for tour in self.tours if tour["destination"] == destination]

    def get(self, tour_id: int) -> Optional[Dict[str, Any]]:
        for tour in self.tours:
            if tour["id"] == tour_id:
                return tour
        return None

    def add(self, tour: TourCreate) -> Dict[str, Any]:
        record = {"id": len(self.tours) + 1, **tour.model_dump()}
        self.tours.append(record)
        return record


def get_tour_catalog(request: Request) -> TourCatalog:
    return request.app.state.tour_catalog


@router.get("")
@cache_response("medium", tags=["tours", "tours:list"])
async def list_tours(destination: Optional[str] = None, catalog: TourCatalog = Depends(get_tour_catalog)):
    tours = catalog.list(destination)
    return api_success(data={"tours": tours, "count": len(tours)})


@router.get("/{tour_id}")
@cache_response("medium", tags=["tours"])
async def get_tour(tour_id: int, catalog: TourCatalog = Depends(get_tour_catalog)):
    tour = catalog.get(tour_id)
    if tour is None:
        return api_error("Tour not found", status_code=status.HTTP_404_NOT_FOUND)
    return api_success(data=tour)


@router.post("", status_code=status.HTTP_201_CREATED)
@clear_cache_by_tags(["tours"])
async def create_tour(body: TourCreate, catalog: TourCatalog = Depends(get_tour_catalog)):
    tour = catalog.add(body)
    logger.info("Tour created", operation="create_tour", tour_id=tour["id"])
    return api_success(data=tour, message="Tour created", status_code=status.HTTP_201_CREATED)
