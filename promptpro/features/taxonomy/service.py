"""
promptpro/features/taxonomy/service.py

Bulk tag taxonomy operations: rename, merge, delete, list.

Each operation is set-based and idempotent: it finds every prompt in the
given scope carrying an affected tag, then applies a pure tag-set transform to
each record through the store's per-record atomic update. Only `tags` is
written, so a concurrent edit of title/content by the owner is never lost.

Records are processed concurrently on a bounded thread pool with no corpus
lock. A record whose write fails is reported in `failed_ids`; the rest are
kept, and re-running the operation retries only what is left.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from promptpro.core.config import settings
from promptpro.core.errors import AppError, StoreError, ValidationError
from promptpro.core.logging import log_event
from promptpro.core.store import DocumentStore, TagTransform, get_store
from promptpro.features.audit.service import record_audit_event
from promptpro.models.prompt import normalize_tag
from promptpro.models.scope import TaxonomyScope


logger = logging.getLogger(__name__)


class TaxonomyStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL_FAILURE = "partial_failure"
    INVALID_MERGE = "invalid_merge"


@dataclass(frozen=True)
class TaxonomyResult:
    operation: str
    status: TaxonomyStatus
    scope: str
    succeeded_ids: Tuple[str, ...] = ()
    failed_ids: Tuple[str, ...] = ()
    changed_ids: Tuple[str, ...] = ()
    message: str = ""
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == TaxonomyStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "status": self.status.value,
            "scope": self.scope,
            "succeeded_ids": list(self.succeeded_ids),
            "failed_ids": list(self.failed_ids),
            "changed_ids": list(self.changed_ids),
            "message": self.message,
        }


def existing_tag(tag) -> str:
    """Normalize a tag used to match stored data."""
    try:
        return normalize_tag(tag)
    except ValueError as exc:
        raise ValidationError(str(exc))


def new_tag(tag, max_length: Optional[int] = None) -> str:
    """Normalize a tag about to be written; enforces the length limit."""
    limit = max_length or settings.TAG_MAX_LENGTH
    normalized = existing_tag(tag)
    if len(normalized) > limit:
        raise ValidationError(f"Tags cannot be longer than {limit} characters")
    return normalized


def rename_transform(old: str, new: str) -> TagTransform:
    def transform(tags: FrozenSet[str]) -> FrozenSet[str]:
        if old not in tags:
            return tags
        return (tags - {old}) | {new}
    return transform


def merge_transform(sources: FrozenSet[str], target: str) -> TagTransform:
    def transform(tags: FrozenSet[str]) -> FrozenSet[str]:
        if not tags & sources:
            return tags
        return (tags - sources) | {target}
    return transform


def delete_transform(tag: str) -> TagTransform:
    def transform(tags: FrozenSet[str]) -> FrozenSet[str]:
        return tags - {tag}
    return transform


class TaxonomyService:
    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        max_workers: Optional[int] = None,
        tag_max_length: Optional[int] = None,
    ):
        self._store = store
        self._max_workers = max_workers
        self._tag_max_length = tag_max_length

    @property
    def store(self) -> DocumentStore:
        return self._store or get_store()

    @property
    def max_workers(self) -> int:
        return max(1, self._max_workers or settings.TAXONOMY_MAX_WORKERS)

    @property
    def tag_max_length(self) -> int:
        return self._tag_max_length or settings.TAG_MAX_LENGTH

    # Operations

    def rename(self, old_tag, new_tag_name, scope: TaxonomyScope, actor_id: Optional[str] = None) -> TaxonomyResult:
        old = existing_tag(old_tag)
        new = new_tag(new_tag_name, self.tag_max_length)
        details = {"old_tag": old, "new_tag": new}
        if old == new:
            # Already converged: only the case differed
            result = TaxonomyResult(operation="rename_tag", status=TaxonomyStatus.COMPLETED,
                                    scope=scope.describe(), message="Tag unchanged after normalization")
            self._audit(result, actor_id, details)
            return result
        return self._apply("rename_tag", {old}, rename_transform(old, new), scope, actor_id, details)

    def merge(self, source_tags: Iterable, target_tag, scope: TaxonomyScope,
              actor_id: Optional[str] = None) -> TaxonomyResult:
        if isinstance(source_tags, (str, bytes)):
            raise ValidationError("source_tags must be a list of tags")
        sources = frozenset(existing_tag(tag) for tag in (source_tags or ()))
        if not sources:
            raise ValidationError("At least one source tag is required")
        target = new_tag(target_tag, self.tag_max_length)
        details = {"source_tags": sorted(sources), "target_tag": target}

        if target in sources:
            result = TaxonomyResult(
                operation="merge_tags",
                status=TaxonomyStatus.INVALID_MERGE,
                scope=scope.describe(),
                message="Target tag cannot be one of the source tags",
            )
            self._audit(result, actor_id, details)
            return result

        return self._apply("merge_tags", sources, merge_transform(sources, target), scope, actor_id, details)

    def delete(self, tag, scope: TaxonomyScope, actor_id: Optional[str] = None) -> TaxonomyResult:
        normalized = existing_tag(tag)
        return self._apply("delete_tag", {normalized}, delete_transform(normalized), scope, actor_id,
                           {"tag": normalized})

    def list_tags(self, scope: TaxonomyScope) -> List[Dict[str, Any]]:
        """Tag usage counts, most used first, ties by name."""
        counts = self.store.tag_counts(scope)
        return [
            {"tag": tag, "count": count}
            for tag, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        ]

    # Batch execution

    def _apply(
        self,
        operation: str,
        match_tags: Iterable[str],
        transform: TagTransform,
        scope: TaxonomyScope,
        actor_id: Optional[str],
        details: Dict[str, Any],
    ) -> TaxonomyResult:
        store = self.store
        try:
            prompts = store.find_prompts_by_tags(match_tags, scope)
        except AppError:
            raise
        except Exception as exc:
            logger.error(f"[taxonomy] {operation} could not read prompts: {exc}")
            raise StoreError(f"Could not read prompts for {operation}") from exc

        prompt_ids = sorted({prompt.id for prompt in prompts})
        succeeded: List[str] = []
        failed: List[str] = []
        changed: List[str] = []
        errors: Dict[str, str] = {}

        if prompt_ids:
            workers = min(self.max_workers, len(prompt_ids))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="taxonomy") as pool:
                futures = {
                    pool.submit(store.update_prompt_tags, prompt_id, transform): prompt_id
                    for prompt_id in prompt_ids
                }
                for future in as_completed(futures):
                    prompt_id = futures[future]
                    try:
                        write = future.result()
                    except Exception as exc:
                        failed.append(prompt_id)
                        errors[prompt_id] = str(exc)
                        logger.warning(
                            f"[taxonomy] {operation} failed for prompt",
                            extra={"prompt_id": prompt_id, "operation": operation, "error_message": str(exc)},
                        )
                        continue
                    succeeded.append(prompt_id)
                    # None: prompt deleted mid-batch, nothing left to update
                    if write is not None and write.changed:
                        changed.append(prompt_id)

        status = TaxonomyStatus.PARTIAL_FAILURE if failed else TaxonomyStatus.COMPLETED
        result = TaxonomyResult(
            operation=operation,
            status=status,
            scope=scope.describe(),
            succeeded_ids=tuple(sorted(succeeded)),
            failed_ids=tuple(sorted(failed)),
            changed_ids=tuple(sorted(changed)),
            message=f"{len(failed)} of {len(prompt_ids)} prompts failed" if failed else "",
            errors=errors,
        )
        self._audit(result, actor_id, details)
        log_event(
            "info" if result.ok else "warning",
            f"[taxonomy] {operation} {status.value}",
            actor_id=actor_id,
            extra={
                "operation": operation,
                "scope": result.scope,
                "matched": len(prompt_ids),
                "changed": len(changed),
                "failed": len(failed),
            },
        )
        return result

    @staticmethod
    def _audit(result: TaxonomyResult, actor_id: Optional[str], details: Dict[str, Any]) -> None:
        audit_details = dict(details)
        audit_details.update({
            "status": result.status.value,
            "scope": result.scope,
            "succeeded": len(result.succeeded_ids),
            "changed": len(result.changed_ids),
            "failed_ids": list(result.failed_ids),
        })
        record_audit_event(
            actor_id=actor_id,
            action=result.operation,
            target_type="tag",
            target_id=details.get("old_tag") or details.get("target_tag") or details.get("tag"),
            details=audit_details,
        )
