"""Group accepted scans by design + lot for display and stock movements."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Tuple

from scan_validation import ScanEvent


@dataclass
class AggregatedLine:
    design: str
    lot: str
    count: int = 0
    unique_identifiers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "design": self.design,
            "lot": self.lot,
            "quantity": self.count,
            "uniqueIdentifiers": list(self.unique_identifiers),
        }


def aggregate(events: Iterable[ScanEvent]) -> List[AggregatedLine]:
    """Reduce scan events to one line per (design, lot), in first-seen order."""
    lines: Dict[Tuple[str, str], AggregatedLine] = {}
    for event in events:
        key = (event.design, event.lot)
        line = lines.get(key)
        if line is None:
            line = AggregatedLine(design=event.design, lot=event.lot)
            lines[key] = line
        line.count += 1
        line.unique_identifiers.append(event.unique_identifier)
    return list(lines.values())


def aggregated_to_dicts(lines: Iterable[AggregatedLine]) -> List[Dict[str, Any]]:
    return [line.to_dict() for line in lines]


def summarize(lines: Iterable[AggregatedLine]) -> Dict[str, int]:
    lines = list(lines)
    return {"lines": len(lines), "items": sum(line.count for line in lines)}
