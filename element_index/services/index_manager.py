"""
Unified index over the local store, the remote portfolio and the shared collection.

This service handles:
- Federated search with per-source timeouts and graceful degradation
- Correlating the same element across sources into duplicate groups
- Version comparison for install/publish decisions
- Rebuilds, cache invalidation after user actions, statistics and health
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from element_index.domain.element_utils import compare_versions, fold, parse_version, score_fields, slugify
from element_index.domain.errors import ElementIndexError
from element_index.domain.models import (
    DuplicateGroup,
    ElementSource,
    ElementType,
    IndexConfig,
    IndexEntry,
    IndexStatistics,
    SearchOptions,
    SearchPage,
    SearchResult,
    SourceOutcome,
    SourceUsage,
    SourceView,
    VersionComparison,
    VersionDelta,
    VersionRelation,
    utc_now,
)
from element_index.services.audit import AuditLogger
from element_index.services.caching import CacheLayer
from element_index.services.normalizer import QueryNormalizer, UnicodeQueryNormalizer
from element_index.services.sources.collection_fetcher import CollectionIndexFetcher
from element_index.services.sources.local_reader import LocalSourceReader
from element_index.services.sources.portfolio_reader import RemotePortfolioReader

logger = logging.getLogger(__name__)

ALL_SOURCES: Tuple[ElementSource, ...] = (
    ElementSource.LOCAL,
    ElementSource.REMOTE_PORTFOLIO,
    ElementSource.COLLECTION,
)
_SOURCE_ORDER = {source: i for i, source in enumerate(ALL_SOURCES)}
_TYPE_ORDER = {element_type: i for i, element_type in enumerate(ElementType)}
_ANSWERED = ("ok", "cached", "stale")
_FAILED = ("failed", "timeout")

# Caches each user action makes outdated when no explicit source list is given.
ACTION_INVALIDATIONS: Dict[str, Tuple[ElementSource, ...]] = {
    "publish": (ElementSource.REMOTE_PORTFOLIO,),
    "delete": (ElementSource.REMOTE_PORTFOLIO,),
    "sync": (ElementSource.REMOTE_PORTFOLIO,),
    "submit": (ElementSource.REMOTE_PORTFOLIO, ElementSource.COLLECTION),
    "install": (),
}


def version_sort_key(version: Optional[str]) -> tuple:
    """Sort key placing unparseable or missing versions below every real one."""
    parsed = parse_version(version)
    return (1, parsed) if parsed is not None else (0, ())


def _recency(entry: IndexEntry) -> datetime:
    return entry.last_modified or entry.last_seen


class UnifiedIndexManager:
    """
    Root of the index: owns nothing but statistics and the last outcome per
    source. All cross-call entry state lives in the CacheLayer.
    """

    def __init__(
        self,
        config: IndexConfig,
        cache: CacheLayer,
        local_reader: LocalSourceReader,
        portfolio_reader: RemotePortfolioReader,
        collection_fetcher: CollectionIndexFetcher,
        normalizer: Optional[QueryNormalizer] = None,
        audit: Optional[AuditLogger] = None,
        closeables: Sequence[Any] = (),
    ):
        self.config = config
        self.cache = cache
        self.local_reader = local_reader
        self.portfolio_reader = portfolio_reader
        self.collection_fetcher = collection_fetcher
        self.normalizer = normalizer or UnicodeQueryNormalizer()
        self.audit = audit or AuditLogger(max_queue_size=config.audit_queue_size)
        self._closeables = list(closeables)

        self._timeouts = {
            ElementSource.LOCAL: config.local_timeout_seconds,
            ElementSource.REMOTE_PORTFOLIO: config.portfolio_timeout_seconds,
            ElementSource.COLLECTION: config.collection_timeout_seconds,
        }
        self._usage: Dict[ElementSource, SourceUsage] = {s: SourceUsage() for s in ALL_SOURCES}
        self._last_outcomes: Dict[ElementSource, SourceOutcome] = {}
        # (element type, folded name) keys from each source's last answer.
        self._last_keys: Dict[ElementSource, Set[Tuple[ElementType, str]]] = {}
        self.last_rebuild: Optional[datetime] = None

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self) -> None:
        self.audit.start()

    async def aclose(self) -> None:
        await self.audit.aclose()
        await self.collection_fetcher.aclose()
        for resource in self._closeables:
            await resource.aclose()

    async def __aenter__(self) -> "UnifiedIndexManager":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ========================================================================
    # Source collection
    # ========================================================================

    async def _load_source(self, source: ElementSource, force_refresh: bool, deadline: float) -> SourceView:
        if source == ElementSource.LOCAL:
            entries = await asyncio.to_thread(self.local_reader.list_local)
            return SourceView(source=source, entries=entries, status="ok")
        if source == ElementSource.REMOTE_PORTFOLIO:
            return await self.portfolio_reader.load_view(force_refresh=force_refresh, deadline=deadline)
        return await self.collection_fetcher.load_view(force_refresh=force_refresh, deadline=deadline)

    async def _stale_view(self, source: ElementSource, error: str) -> Optional[SourceView]:
        if source == ElementSource.REMOTE_PORTFOLIO:
            return self.portfolio_reader.stale_view(error)
        if source == ElementSource.COLLECTION:
            return await self.collection_fetcher.stale_view(error)
        return None

    async def _load_bounded(self, source: ElementSource, force_refresh: bool) -> Tuple[SourceView, SourceOutcome]:
        timeout = self._timeouts[source]
        started = time.perf_counter()
        deadline = asyncio.get_running_loop().time() + timeout
        try:
            view = await asyncio.wait_for(self._load_source(source, force_refresh, deadline), timeout=timeout)
        except asyncio.TimeoutError:
            error = f"timed out after {timeout:.1f}s"
            logger.warning(f"Source {source.value} {error}")
            view = await self._stale_view(source, error) or SourceView(source=source, status="timeout", error=error)
        except ElementIndexError as e:
            logger.warning(f"Source {source.value} unavailable: {e}")
            view = SourceView(source=source, status="failed", error=str(e))
        except Exception as e:
            logger.error(f"Unexpected error loading source {source.value}: {e}", exc_info=True)
            view = SourceView(source=source, status="failed", error=str(e))

        duration_ms = (time.perf_counter() - started) * 1000
        return view, self._record(view, duration_ms)

    def _record(self, view: SourceView, duration_ms: float) -> SourceOutcome:
        outcome = SourceOutcome(
            source=view.source,
            status=view.status,
            count=len(view.entries),
            error=view.error,
            duration_ms=round(duration_ms, 3),
        )
        self._last_outcomes[view.source] = outcome
        if view.status in _ANSWERED or view.status == "disabled":
            self._last_keys[view.source] = {(e.element_type, fold(e.name)) for e in view.entries}
        if view.status == "disabled":
            return outcome

        usage = self._usage[view.source]
        usage.average_duration_ms = (usage.average_duration_ms * usage.searches + duration_ms) / (usage.searches + 1)
        usage.searches += 1
        usage.results += len(view.entries)
        if view.status in _FAILED:
            usage.failures += 1
        usage.last_used = utc_now()
        return outcome

    async def _collect(
        self, sources: Iterable[ElementSource], force_refresh: bool = False
    ) -> List[Tuple[SourceView, SourceOutcome]]:
        """Load the given sources concurrently, each bounded by its own timeout."""
        ordered = sorted(set(sources), key=_SOURCE_ORDER.__getitem__)
        return list(await asyncio.gather(*(self._load_bounded(s, force_refresh) for s in ordered)))

    @staticmethod
    def _requested(sources: Optional[Iterable[ElementSource]]) -> List[ElementSource]:
        if not sources:
            return list(ALL_SOURCES)
        return sorted(set(sources), key=_SOURCE_ORDER.__getitem__)

    # ========================================================================
    # Search
    # ========================================================================

    def _score(self, entry: IndexEntry, query: str) -> Tuple[float, List[str]]:
        metadata = entry.metadata
        tag_fields = [
            ("tag", metadata.tags),
            ("keyword", metadata.keywords),
            ("trigger", getattr(metadata, "triggers", None) or []),
            ("category", [metadata.category] if metadata.category else []),
        ]
        return score_fields(
            query,
            entry.name,
            tag_fields,
            metadata.description,
            self.config.name_weight,
            self.config.tag_weight,
            self.config.description_weight,
        )

    def _normalize(self, text: str, context: str) -> str:
        normalized = self.normalizer.normalize(text)
        if not normalized.is_valid:
            self.audit.log_event(
                "query_sanitized",
                "index",
                details=f"{context}: {', '.join(normalized.issues)}",
                severity="MEDIUM",
                metadata={"issues": normalized.issues},
            )
        return normalized.normalized_text

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> SearchPage:
        """
        Search all requested sources and return one ranked page.

        Source failures never raise; they show up in ``sources`` and ``degraded``.
        """
        options = options or SearchOptions()
        q = self._normalize(query, "search")
        requested = self._requested(options.sources)
        type_filter = set(options.element_types) if options.element_types else None
        logger.info(f"Search '{q}' over {', '.join(s.value for s in requested)}")

        collected = await self._collect(requested)

        # (element type, folded name) -> source -> (entry, score, reasons)
        groups: Dict[Tuple[ElementType, str], Dict[ElementSource, Tuple[IndexEntry, float, List[str]]]] = {}
        for view, _outcome in collected:
            for entry in view.entries:
                if type_filter and entry.element_type not in type_filter:
                    continue
                score, reasons = self._score(entry, q)
                if q and score <= 0:
                    continue
                per_source = groups.setdefault((entry.element_type, fold(entry.name)), {})
                current = per_source.get(entry.source)
                if current is None or (score, version_sort_key(entry.version)) > (
                    current[1],
                    version_sort_key(current[0].version),
                ):
                    per_source[entry.source] = (entry, score, reasons)

        results: List[SearchResult] = []
        for per_source in groups.values():
            members = [item[0] for item in per_source.values()]
            canonical = self._canonical(members)
            sources = sorted(per_source, key=_SOURCE_ORDER.__getitem__)
            is_duplicate = len(sources) > 1
            for source in sources:
                entry, score, reasons = per_source[source]
                results.append(
                    SearchResult(
                        entry=entry,
                        score=score,
                        match_reasons=reasons,
                        is_duplicate=is_duplicate,
                        duplicate_sources=[s for s in sources if s != source] if is_duplicate else [],
                        version_status=self._relation(entry, canonical) if is_duplicate else None,
                    )
                )

        results.sort(key=lambda r: (-r.score, fold(r.entry.name), _TYPE_ORDER[r.entry.element_type]))
        self._assign_ranks(results)
        if options.sort_by == "name":
            results.sort(key=lambda r: (fold(r.entry.name), _TYPE_ORDER[r.entry.element_type]))
        elif options.sort_by == "version":
            results.sort(key=lambda r: version_sort_key(r.entry.version), reverse=True)

        page_size = min(options.page_size or self.config.default_page_size, self.config.max_page_size)
        start = (options.page - 1) * page_size
        outcomes = [outcome for _view, outcome in collected]
        degraded, reason = self._degradation(outcomes)

        return SearchPage(
            results=results[start : start + page_size],
            total_count=len(results),
            page=options.page,
            page_size=page_size,
            query=q,
            sources=outcomes,
            degraded=degraded,
            reason=reason,
        )

    @staticmethod
    def _assign_ranks(results: List[SearchResult]) -> None:
        """Competition ranking over score alone: equal scores share a rank."""
        previous_score: Optional[float] = None
        rank = 0
        for position, result in enumerate(results, start=1):
            if result.score != previous_score:
                rank = position
                previous_score = result.score
            result.rank = rank

    @staticmethod
    def _degradation(outcomes: List[SourceOutcome]) -> Tuple[bool, Optional[str]]:
        failed = [o for o in outcomes if o.status in _FAILED]
        if not failed:
            return False, None
        if any(o.status in _ANSWERED for o in outcomes):
            return True, None
        details = "; ".join(f"{o.source.value}: {o.error or o.status}" for o in failed)
        return True, f"No requested source answered ({details})"

    # ========================================================================
    # Lookup, duplicates and versions
    # ========================================================================

    async def find_by_name(self, name: str) -> List[IndexEntry]:
        """
        Every entry whose name or slug matches ``name`` in any type and source.

        One element type among the matches means a unique match; several mean
        the name is ambiguous and the caller has to pick a type.
        """
        target = self._normalize(name, "find_by_name")
        target_slug = slugify(target)
        if not target:
            return []

        collected = await self._collect(ALL_SOURCES)
        matches = [
            entry
            for view, _outcome in collected
            for entry in view.entries
            if fold(entry.name) == target
            or (target_slug and (slugify(entry.name) == target_slug or slugify(Path(entry.locator).stem) == target_slug))
        ]
        matches.sort(key=lambda e: (_TYPE_ORDER[e.element_type], _SOURCE_ORDER[e.source], e.locator))

        types = {e.element_type for e in matches}
        if len(types) > 1:
            logger.info(f"Name '{target}' is ambiguous across types: {', '.join(sorted(t.value for t in types))}")
        return matches

    @staticmethod
    def _best_per_source(entries: Iterable[IndexEntry]) -> Dict[ElementSource, IndexEntry]:
        best: Dict[ElementSource, IndexEntry] = {}
        for entry in entries:
            current = best.get(entry.source)
            if current is None or version_sort_key(entry.version) > version_sort_key(current.version):
                best[entry.source] = entry
        return best

    @staticmethod
    def _canonical(entries: Sequence[IndexEntry]) -> IndexEntry:
        """Highest version; most recently modified or seen on a tie."""
        return max(entries, key=lambda e: (version_sort_key(e.version), _recency(e)))

    @staticmethod
    def _relation(entry: IndexEntry, canonical: IndexEntry) -> VersionRelation:
        result = compare_versions(entry.version, canonical.version)
        if result is None:
            return "unknown"
        if result == 0:
            return "same"
        return "older" if result < 0 else "newer"

    def _group(self, name: str, element_type: ElementType, entries: Sequence[IndexEntry]) -> DuplicateGroup:
        members = sorted(self._best_per_source(entries).values(), key=lambda e: _SOURCE_ORDER[e.source])
        canonical = self._canonical(members)
        fingerprints = [e.content_fingerprint for e in members if e.content_fingerprint]
        return DuplicateGroup(
            name=name,
            element_type=element_type,
            entries=members,
            canonical=canonical,
            version_deltas=[
                VersionDelta(source=e.source, version=e.version, relation=self._relation(e, canonical))
                for e in members
            ],
            fingerprint_confirmed=len(fingerprints) != len(set(fingerprints)),
        )

    @staticmethod
    def _by_type(entries: Iterable[IndexEntry]) -> Dict[ElementType, List[IndexEntry]]:
        grouped: Dict[ElementType, List[IndexEntry]] = {}
        for entry in entries:
            grouped.setdefault(entry.element_type, []).append(entry)
        return dict(sorted(grouped.items(), key=lambda item: _TYPE_ORDER[item[0]]))

    async def check_duplicates(
        self, name: str, element_type: Optional[ElementType] = None
    ) -> Optional[DuplicateGroup]:
        """
        The group of entries sharing ``name`` (and type) across at least two
        sources, or None when the element exists in one source or nowhere.
        """
        matches = await self.find_by_name(name)
        if element_type is not None:
            matches = [e for e in matches if e.element_type == element_type]

        for group_type, entries in self._by_type(matches).items():
            if len({e.source for e in entries}) < 2:
                continue
            group = self._group(entries[0].name, group_type, entries)
            logger.info(
                f"Duplicate '{group.name}' ({group_type.value}) in "
                f"{', '.join(s.value for s in group.sources)}; canonical from {group.canonical.source.value}"
            )
            return group
        return None

    async def compare_versions(
        self, name: str, element_type: Optional[ElementType] = None
    ) -> Optional[VersionComparison]:
        """
        Compare the local copy of an element against the portfolio and collection.

        upgrade:  a remote copy is newer than the local one, or there is no
                  local copy at all
        conflict: a remote copy has the same (or an unreadable) version but
                  different content
        current:  the local copy is at least as new as every remote copy
        """
        matches = await self.find_by_name(name)
        if element_type is not None:
            matches = [e for e in matches if e.element_type == element_type]
        by_type = self._by_type(matches)
        if not by_type:
            return None

        chosen_type = next(
            (t for t, entries in by_type.items() if any(e.source == ElementSource.LOCAL for e in entries)),
            next(iter(by_type)),
        )
        if len(by_type) > 1:
            logger.info(f"compare_versions('{name}') is ambiguous; using {chosen_type.value}")

        best = self._best_per_source(by_type[chosen_type])
        local = best.get(ElementSource.LOCAL)
        portfolio = best.get(ElementSource.REMOTE_PORTFOLIO)
        collection = best.get(ElementSource.COLLECTION)
        remotes = [e for e in (portfolio, collection) if e is not None]
        display_name = (local or remotes[0]).name

        comparison = VersionComparison(
            name=display_name,
            element_type=chosen_type,
            recommendation="current",
            local=local.version if local else None,
            portfolio=portfolio.version if portfolio else None,
            collection=collection.version if collection else None,
        )

        if local is None:
            newest = self._canonical(remotes)
            comparison.recommendation = "upgrade"
            comparison.recommended_source = newest.source
            comparison.details = f"Not installed locally; {newest.source.value} has {newest.version or 'an unversioned copy'}"
            return comparison

        newer: List[IndexEntry] = []
        conflicting: List[IndexEntry] = []
        for remote in remotes:
            result = compare_versions(local.version, remote.version)
            content_differs = (
                local.content_fingerprint is not None
                and remote.content_fingerprint is not None
                and local.content_fingerprint != remote.content_fingerprint
            )
            if result is not None and result < 0:
                newer.append(remote)
            elif (result is None or result == 0) and content_differs:
                conflicting.append(remote)

        if newer:
            newest = self._canonical(newer)
            comparison.recommendation = "upgrade"
            comparison.recommended_source = newest.source
            comparison.details = f"Local {local.version} is older than {newest.source.value} {newest.version}"
        elif conflicting:
            comparison.recommendation = "conflict"
            comparison.details = (
                f"Local copy differs from {', '.join(e.source.value for e in conflicting)} "
                f"without a newer version"
            )
            self.audit.log_event(
                "version_conflict",
                "index",
                details=f"{display_name} ({chosen_type.value}): {comparison.details}",
                severity="MEDIUM",
                metadata={"local": local.version, "remote": [e.version for e in conflicting]},
            )
        else:
            comparison.recommended_source = ElementSource.LOCAL
            comparison.details = f"Local {local.version or 'copy'} is up to date"
        return comparison

    async def list_by_type(
        self, element_type: ElementType, sources: Optional[Iterable[ElementSource]] = None
    ) -> List[IndexEntry]:
        """Every entry of one element type, one per id within each source."""
        collected = await self._collect(self._requested(sources))
        entries = [e for view, _outcome in collected for e in view.entries if e.element_type == element_type]
        entries.sort(key=lambda e: (fold(e.name), _SOURCE_ORDER[e.source]))
        return entries

    # ========================================================================
    # Maintenance
    # ========================================================================

    def _invalidate(self, sources: Iterable[ElementSource]) -> List[ElementSource]:
        invalidated: List[ElementSource] = []
        for source in sources:
            if source == ElementSource.REMOTE_PORTFOLIO:
                self.portfolio_reader.invalidate()
                invalidated.append(source)
            elif source == ElementSource.COLLECTION:
                self.collection_fetcher.invalidate()
                invalidated.append(source)
        return invalidated

    def invalidate_after_action(
        self, action: str, sources: Optional[Iterable[ElementSource]] = None
    ) -> List[ElementSource]:
        """
        Drop cached views made outdated by a user action (publish, submit, ...).

        The next read of those sources refetches.
        """
        if sources is None:
            sources = ACTION_INVALIDATIONS.get(action, ALL_SOURCES)
        invalidated = self._invalidate(sources)
        logger.info(f"Action '{action}' invalidated {', '.join(s.value for s in invalidated) or 'nothing'}")
        self.audit.log_event(
            "cache_invalidated",
            "index",
            details=f"after {action}",
            metadata={"sources": [s.value for s in invalidated]},
        )
        return invalidated

    async def rebuild_index(self, source: Optional[ElementSource] = None) -> List[SourceOutcome]:
        """Invalidate and immediately refetch one source, or all of them."""
        sources = [source] if source is not None else list(ALL_SOURCES)
        collected = await self._collect(sources, force_refresh=True)
        self.last_rebuild = utc_now()

        outcomes = [outcome for _view, outcome in collected]
        summary = ", ".join(f"{o.source.value}={o.status}:{o.count}" for o in outcomes)
        logger.info(f"Index rebuilt: {summary}")
        self.audit.log_event(
            "index_rebuild",
            "index",
            details=summary,
            metadata={o.source.value: o.count for o in outcomes},
        )
        return outcomes

    def get_statistics(self) -> IndexStatistics:
        """Snapshot of counts, cache and usage figures. Never raises."""
        stats = IndexStatistics(last_rebuild=self.last_rebuild)
        try:
            cache_stats = self.cache.stats()
            stats.cache = cache_stats
            stats.cache_hit_rate = cache_stats.hit_rate
        except Exception as e:
            logger.error(f"Could not read cache statistics: {e}", exc_info=True)
            stats.errors.append(f"cache: {e}")

        for source in ALL_SOURCES:
            try:
                outcome = self._last_outcomes.get(source)
                stats.per_source_counts[source.value] = outcome.count if outcome else 0
                stats.source_usage[source.value] = self._usage[source].model_copy()
                if outcome is not None and outcome.status in _FAILED:
                    stats.errors.append(f"{source.value}: {outcome.error or outcome.status}")
            except Exception as e:
                logger.error(f"Could not read statistics for {source.value}: {e}", exc_info=True)
                stats.errors.append(f"{source.value}: {e}")

        try:
            stats.duplicates_count = self._count_duplicates()
        except Exception as e:
            logger.error(f"Could not count duplicates: {e}", exc_info=True)
            stats.errors.append(f"duplicates: {e}")
        return stats

    def _count_duplicates(self) -> int:
        """Elements (by type and folded name) present in more than one source."""
        seen: Dict[Tuple[ElementType, str], int] = {}
        for keys in self._last_keys.values():
            for key in keys:
                seen[key] = seen.get(key, 0) + 1
        return sum(1 for count in seen.values() if count > 1)

    def health(self) -> Dict[str, Any]:
        sources: Dict[str, Any] = {}
        for source in ALL_SOURCES:
            outcome = self._last_outcomes.get(source)
            sources[source.value] = outcome.model_dump(mode="json") if outcome else {"status": "unknown"}

        failing = [o for o in self._last_outcomes.values() if o.status in _FAILED]
        return {
            "status": "degraded" if failing else "ok",
            "sources": sources,
            "cache": self.cache.stats().model_dump(),
            "audit_pending": self.audit.pending,
            "last_rebuild": self.last_rebuild.isoformat() if self.last_rebuild else None,
        }
