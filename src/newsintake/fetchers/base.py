from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..models import RawItem, Source, SourceKind
from ..normalize import Normalized, NormalizeResult, Skipped


@dataclass(frozen=True)
class FetchBatch:
    records: list[Any]
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Collected:
    items: list[RawItem]
    skipped: list[Skipped]
    warnings: list[str]


class Fetcher:
    """Retrieves raw records for one source kind and maps them to ``RawItem``."""

    kind: SourceKind

    def fetch(self, source: Source) -> FetchBatch:
        raise NotImplementedError

    def normalize(self, record: Any, source: Source) -> NormalizeResult:
        raise NotImplementedError

    def collect(self, source: Source) -> Collected:
        batch = self.fetch(source)
        items: list[RawItem] = []
        skipped: list[Skipped] = []
        for record in batch.records:
            result = self.normalize(record, source)
            if isinstance(result, Normalized):
                items.append(result.item)
            else:
                skipped.append(result)
        return Collected(items=items, skipped=skipped, warnings=list(batch.warnings))
