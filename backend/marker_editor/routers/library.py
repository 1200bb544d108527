"""Library browsing and marker statistics routes."""

from typing import Union

from fastapi import APIRouter

from marker_editor.dependencies import QueryServiceDep
from marker_editor.models import (
    BreakdownResult,
    EpisodeData,
    LibrarySection,
    SeasonData,
    ShowBreakdownTree,
)

router = APIRouter()


@router.get("/sections", response_model=list[LibrarySection])
async def get_libraries(service: QueryServiceDep):
    return await service.get_libraries()


@router.get("/sections/{section_id}/items")
async def get_section_items(section_id: int, service: QueryServiceDep):
    return await service.get_section_items(section_id)


@router.get("/sections/{section_id}/stats", response_model=BreakdownResult)
async def get_section_stats(section_id: int, service: QueryServiceDep):
    return await service.get_section_stats(section_id)


@router.get("/shows/{show_id}/seasons", response_model=list[SeasonData])
async def get_seasons(show_id: int, service: QueryServiceDep):
    return await service.get_seasons(show_id)


@router.get("/shows/{show_id}/breakdown", response_model=Union[ShowBreakdownTree, BreakdownResult])
async def get_show_breakdown(show_id: int, service: QueryServiceDep, include_seasons: bool = False):
    return await service.get_show_breakdown(show_id, include_seasons)


@router.get("/seasons/{season_id}/episodes", response_model=list[EpisodeData])
async def get_episodes(season_id: int, service: QueryServiceDep):
    return await service.get_episodes(season_id)


@router.get("/seasons/{season_id}/breakdown", response_model=BreakdownResult)
async def get_season_breakdown(season_id: int, service: QueryServiceDep):
    return await service.get_season_breakdown(season_id)
