"""Gap detection: diff the source dataset against the derived dataset.

For every Key the source lists in scope, each required model must have a
derived record whose recorded source fingerprint still matches. Anything else
is a Gap. Detection is read-only; gaps are recomputed fresh on every run.

Collaborators (duck-typed):
  source.list_keys_in_scope(scope) -> set[Key]
  source.get_source_record(key) -> SourceRecord | None
  derived.list_derived_models(key) -> set[MinerModel]
  derived.is_stale(key, model) -> bool
"""

from __future__ import annotations

import logging
from collections import Counter

from reconcile.errors import DetectionError, InvalidScope
from reconcile.models import Gap, MinerModel, Scope

logger = logging.getLogger(__name__)


class GapDetector:
    """Computes the set of missing or stale (Key, Model) units for a scope."""

    def __init__(self, source, derived, models: tuple[MinerModel, ...]) -> None:
        if not models:
            raise ValueError("GapDetector requires at least one model")
        self._source = source
        self._derived = derived
        self._models = tuple(models)

    @property
    def models(self) -> tuple[MinerModel, ...]:
        return self._models

    def detect(self, scope: Scope) -> set[Gap]:
        """Return every gap in scope.

        Raises:
            InvalidScope: Malformed scope (propagated unchanged).
            DetectionError: Either dataset failed while computing gaps.
        """
        try:
            return self._detect(scope)
        except (InvalidScope, DetectionError):
            raise
        except Exception as e:
            logger.exception("Gap detection failed for scope %s", scope)
            raise DetectionError(f"Gap detection failed for scope {scope}: {e}") from e

    def _detect(self, scope: Scope) -> set[Gap]:
        keys = self._source.list_keys_in_scope(scope)
        gaps: set[Gap] = set()
        per_model: Counter = Counter()
        missing_source = 0
        stale = 0

        for key in sorted(keys):
            if not scope.contains(key):
                logger.debug("Source listed key %s outside scope %s — ignoring", key, scope)
                continue

            record = self._source.get_source_record(key)
            if record is None:
                missing_source += 1
                continue

            present = self._derived.list_derived_models(key)
            for model in self._models:
                if model in present:
                    if not self._derived.is_stale(key, model):
                        continue
                    stale += 1
                gaps.add(Gap(key, model, weight=record.weight, fingerprint=record.fingerprint))
                per_model[model.value] += 1

        if missing_source:
            logger.warning(
                "%d key(s) in scope %s have no source record — skipped",
                missing_source, scope,
            )

        logger.info(
            "Gap detection for %s: %d keys scanned, %d gaps (%d stale) %s",
            scope, len(keys), len(gaps), stale,
            dict(sorted(per_model.items())) if per_model else "",
        )
        return gaps
