"""
Facility Directory

Loads veterinary facilities and administrative-region centroids from
facilities.json.  Same reload contract as the knowledge base: a complete
snapshot is validated, then swapped in; invalid files are rejected and the
previous snapshot stays active.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import Counter
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ValidationError

from pashucare.config import settings
from pashucare.core.distance_ranker import parse_window, WEEKDAYS
from pashucare.core.errors import DataIntegrityError
from pashucare.core.snapshot import SnapshotHolder
from pashucare.models.schemas import Coordinates, FacilityRecord, Region

logger = logging.getLogger(__name__)

FACILITY_TYPES = {"government", "private"}


class _DirectoryFile(BaseModel):
    version: Optional[str] = None
    regions: list[Region] = []
    facilities: list[FacilityRecord]


class FacilitySnapshot:
    """Immutable view of one facility-directory version."""

    def __init__(self, version: str, facilities: list[FacilityRecord], regions: list[Region]) -> None:
        self.version = version
        self.facilities: Mapping[str, FacilityRecord] = MappingProxyType(
            {f.facility_id: f for f in facilities}
        )
        self.regions: Mapping[str, Region] = MappingProxyType(
            {r.code.upper(): r for r in regions}
        )

    def all(self) -> list[FacilityRecord]:
        return list(self.facilities.values())

    def region_centroid(self, region_code: str) -> Optional[Coordinates]:
        region = self.regions.get(region_code.strip().upper())
        if region is None:
            return None
        return Coordinates(latitude=region.latitude, longitude=region.longitude)

    def __len__(self) -> int:
        return len(self.facilities)


def _check_integrity(directory: _DirectoryFile) -> None:
    problems: list[str] = []

    counts = Counter(f.facility_id for f in directory.facilities)
    problems.extend(f"duplicate facility id {fid!r}" for fid, n in counts.items() if n > 1)
    region_counts = Counter(r.code.upper() for r in directory.regions)
    problems.extend(f"duplicate region code {code!r}" for code, n in region_counts.items() if n > 1)

    for f in directory.facilities:
        if not f.name:
            problems.append(f"facility {f.facility_id!r} has no name")
        if f.facility_type not in FACILITY_TYPES:
            problems.append(f"facility {f.facility_id!r} has invalid type {f.facility_type!r}")
        if not f.operating_hours:
            problems.append(f"facility {f.facility_id!r} has no operating hours")
        for day, windows in f.operating_hours.items():
            if day not in WEEKDAYS:
                problems.append(f"facility {f.facility_id!r} has unknown weekday {day!r}")
            for window in windows:
                try:
                    parse_window(window)
                except ValueError:
                    problems.append(f"facility {f.facility_id!r} has malformed hours {window!r}")

    if problems:
        raise DataIntegrityError("; ".join(problems))


def build_snapshot(raw: dict[str, Any], version: Optional[str] = None) -> FacilitySnapshot:
    """Validate a parsed directory document.

    Raises:
        DataIntegrityError: if the document fails schema or integrity checks.
    """
    try:
        directory = _DirectoryFile.model_validate(raw)
    except ValidationError as exc:
        raise DataIntegrityError(f"facility directory schema invalid: {exc.error_count()} errors") from exc
    _check_integrity(directory)
    return FacilitySnapshot(
        version=directory.version or version or "unversioned",
        facilities=directory.facilities,
        regions=directory.regions,
    )


def load_snapshot(path: str | Path) -> FacilitySnapshot:
    path = Path(path)
    try:
        content = path.read_bytes()
        raw = json.loads(content)
    except (OSError, json.JSONDecodeError) as exc:
        raise DataIntegrityError(f"cannot read facility directory {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise DataIntegrityError("facility directory root must be an object")
    return build_snapshot(raw, version=hashlib.sha256(content).hexdigest()[:12])


class FacilityDirectory:
    """Reloadable holder of the active FacilitySnapshot."""

    def __init__(self, path: str | Path | None = None, snapshot: FacilitySnapshot | None = None) -> None:
        self.path = Path(path or settings.FACILITIES_PATH)
        self._holder: SnapshotHolder[FacilitySnapshot] = SnapshotHolder(snapshot)

    def current(self) -> FacilitySnapshot:
        snapshot = self._holder.current()
        if snapshot is None:
            snapshot = self.reload()
        return snapshot

    def install(self, snapshot: FacilitySnapshot) -> FacilitySnapshot:
        self._holder.swap(snapshot)
        logger.info(
            "facility_directory: installed version=%s facilities=%d regions=%d",
            snapshot.version, len(snapshot), len(snapshot.regions),
        )
        return snapshot

    def reload(self, path: str | Path | None = None) -> FacilitySnapshot:
        """Load the file and swap it in; keeps the active snapshot on failure."""
        target = Path(path) if path else self.path
        try:
            snapshot = load_snapshot(target)
        except DataIntegrityError as exc:
            active = self._holder.current()
            logger.error(
                "facility_directory: reload rejected path=%s active_version=%s reason=%s",
                target, active.version if active else None, exc.message,
            )
            raise
        return self.install(snapshot)
