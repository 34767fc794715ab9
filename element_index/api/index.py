from __future__ import annotations

from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from element_index.core.dependencies import get_index_manager
from element_index.domain.element_utils import strip_nulls
from element_index.domain.models import (
    DuplicateGroup,
    ElementSource,
    ElementType,
    IndexStatistics,
    SearchOptions,
    SearchPage,
    SortOrder,
    SourceOutcome,
    VersionComparison,
)
from element_index.services.index_manager import UnifiedIndexManager

logger = logging.getLogger(__name__)
router = APIRouter()


def _parse_type(value: Optional[str]) -> Optional[ElementType]:
    if not value:
        return None
    try:
        return ElementType.parse(value)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def _parse_source(value: Optional[str]) -> Optional[ElementSource]:
    if not value:
        return None
    try:
        return ElementSource(value)
    except ValueError:
        allowed = ", ".join(s.value for s in ElementSource)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown source {value!r}; expected one of {allowed}",
        )


# ---------------------------------------------------------------------------
# Search and lookup
# ---------------------------------------------------------------------------

@router.get("/search", response_model=SearchPage)
async def search(
    q: str = Query("", description="Free-text query. Empty lists everything."),
    source: Optional[List[str]] = Query(None, description="Restrict to these sources."),
    types: Optional[List[str]] = Query(None, alias="type", description="Restrict to these element types."),
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1),
    sort_by: SortOrder = Query("relevance"),
    manager: UnifiedIndexManager = Depends(get_index_manager),
) -> SearchPage:
    options = SearchOptions(
        sources=[_parse_source(s) for s in source] if source else None,
        element_types=[_parse_type(t) for t in types] if types else None,
        page=page,
        page_size=page_size,
        sort_by=sort_by,
    )
    return await manager.search(q, options)


@router.get("/elements/{name}")
async def find_element(name: str, manager: UnifiedIndexManager = Depends(get_index_manager)) -> dict:
    """
    Every entry matching ``name`` across types and sources.
    """
    matches = await manager.find_by_name(name)
    if not matches:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No element named {name!r}")

    types = sorted({m.element_type.value for m in matches})
    return {
        "name": name,
        "ambiguous": len(types) > 1,
        "types": types,
        "matches": [strip_nulls(m.model_dump(mode="json")) for m in matches],
    }


@router.get("/types/{element_type}")
async def list_type(
    element_type: str,
    source: Optional[List[str]] = Query(None),
    manager: UnifiedIndexManager = Depends(get_index_manager),
) -> dict:
    parsed = _parse_type(element_type)
    sources = [_parse_source(s) for s in source] if source else None
    entries = await manager.list_by_type(parsed, sources)
    return {
        "element_type": parsed.value,
        "count": len(entries),
        "entries": [strip_nulls(e.model_dump(mode="json")) for e in entries],
    }


# ---------------------------------------------------------------------------
# Install / publish support
# ---------------------------------------------------------------------------

@router.get("/duplicates/{name}", response_model=DuplicateGroup)
async def duplicates(
    name: str,
    element_type: Optional[str] = Query(None, alias="type"),
    manager: UnifiedIndexManager = Depends(get_index_manager),
) -> DuplicateGroup:
    group = await manager.check_duplicates(name, _parse_type(element_type))
    if group is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{name!r} does not exist in more than one source",
        )
    return group


@router.get("/versions/{name}", response_model=VersionComparison)
async def versions(
    name: str,
    element_type: Optional[str] = Query(None, alias="type"),
    manager: UnifiedIndexManager = Depends(get_index_manager),
) -> VersionComparison:
    comparison = await manager.compare_versions(name, _parse_type(element_type))
    if comparison is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No element named {name!r}")
    return comparison


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

@router.post("/rebuild", response_model=List[SourceOutcome])
async def rebuild(
    source: Optional[str] = Query(None),
    manager: UnifiedIndexManager = Depends(get_index_manager),
) -> List[SourceOutcome]:
    return await manager.rebuild_index(_parse_source(source))


@router.post("/invalidate")
async def invalidate(
    action: str = Query(..., description="User action that made cached views outdated, e.g. 'publish'."),
    source: Optional[List[str]] = Query(None),
    manager: UnifiedIndexManager = Depends(get_index_manager),
) -> dict:
    sources = [_parse_source(s) for s in source] if source else None
    invalidated = manager.invalidate_after_action(action, sources)
    return {"action": action, "invalidated": [s.value for s in invalidated]}


@router.get("/statistics", response_model=IndexStatistics)
async def statistics(manager: UnifiedIndexManager = Depends(get_index_manager)) -> IndexStatistics:
    return manager.get_statistics()
