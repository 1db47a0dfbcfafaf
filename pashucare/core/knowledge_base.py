"""
Knowledge Base

Loads disease, symptom and treatment records from knowledge_base.json into an
immutable, cross-indexed snapshot (by animal type and by symptom keyword).

Reloads build a complete new snapshot and swap it in atomically.  A file that
fails structural validation raises DataIntegrityError and the previous
snapshot stays active.
Can be run standalone: python -m pashucare.core.knowledge_base
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import Counter
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from pashucare.config import settings
from pashucare.core.errors import DataIntegrityError
from pashucare.core.name_matcher import build_choices, normalize_text
from pashucare.core.snapshot import SnapshotHolder
from pashucare.models.schemas import AnimalType

logger = logging.getLogger(__name__)

TREATMENT_TIERS = ("home_care", "veterinary", "emergency")


# ---------------------------------------------------------------------------
# Record schemas
# ---------------------------------------------------------------------------

class DiseaseRecord(BaseModel):
    condition_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    localized_names: dict[str, str] = {}
    aliases: list[str] = []
    animal_types: list[AnimalType] = Field(min_length=1)
    severity: int = Field(ge=1, le=5)
    veterinary_required: bool = False
    reassess_hours: Optional[int] = Field(default=None, gt=0)
    symptom_ids: list[str] = []
    common: bool = False

    model_config = {"frozen": True}

    def display_name(self, language: str) -> str:
        return self.localized_names.get(language, self.name)


class SymptomRecord(BaseModel):
    symptom_id: str = Field(min_length=1)
    name: str
    keywords: list[str] = Field(min_length=1)

    model_config = {"frozen": True}


class TreatmentRecord(BaseModel):
    treatment_id: str = Field(min_length=1)
    condition_id: str
    tier: str
    animal_types: list[AnimalType] = []
    steps: list[str] = Field(min_length=1)

    model_config = {"frozen": True}

    def applies_to(self, animal_type: AnimalType) -> bool:
        return not self.animal_types or animal_type in self.animal_types


class _KnowledgeBaseFile(BaseModel):
    version: Optional[str] = None
    diseases: list[DiseaseRecord]
    symptoms: list[SymptomRecord]
    treatments: list[TreatmentRecord] = []


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

class KnowledgeBaseSnapshot:
    """Immutable, indexed view of one knowledge-base version."""

    def __init__(
        self,
        version: str,
        diseases: list[DiseaseRecord],
        symptoms: list[SymptomRecord],
        treatments: list[TreatmentRecord],
    ) -> None:
        self.version = version
        self.diseases: Mapping[str, DiseaseRecord] = MappingProxyType(
            {d.condition_id: d for d in diseases}
        )
        self.symptoms: Mapping[str, SymptomRecord] = MappingProxyType(
            {s.symptom_id: s for s in symptoms}
        )

        by_condition: dict[str, list[TreatmentRecord]] = {}
        for t in treatments:
            by_condition.setdefault(t.condition_id, []).append(t)
        self._treatments = MappingProxyType(
            {cid: tuple(ts) for cid, ts in by_condition.items()}
        )

        by_animal: dict[AnimalType, list[str]] = {a: [] for a in AnimalType}
        for d in diseases:
            for animal in d.animal_types:
                by_animal[animal].append(d.condition_id)
        self._by_animal = MappingProxyType(
            {a: tuple(sorted(ids)) for a, ids in by_animal.items()}
        )

        keyword_index: dict[str, set[str]] = {}
        for s in symptoms:
            for kw in s.keywords:
                norm = normalize_text(kw)
                if norm:
                    keyword_index.setdefault(norm, set()).add(s.symptom_id)
        self._keyword_index = MappingProxyType(
            {kw: frozenset(ids) for kw, ids in keyword_index.items()}
        )

        self._name_choices = MappingProxyType({
            a: MappingProxyType(build_choices(
                (cid, [self.diseases[cid].name, *self.diseases[cid].aliases,
                       *self.diseases[cid].localized_names.values()])
                for cid in ids
            ))
            for a, ids in self._by_animal.items()
        })

    def disease(self, condition_id: str) -> Optional[DiseaseRecord]:
        return self.diseases.get(condition_id)

    def diseases_for(self, animal_type: AnimalType) -> list[DiseaseRecord]:
        return [self.diseases[cid] for cid in self._by_animal[animal_type]]

    def name_choices(self, animal_type: AnimalType) -> Mapping[str, str]:
        """Label (id, name, alias, localized name) -> id for one animal type."""
        return self._name_choices[animal_type]

    def all_name_choices(self) -> dict[str, str]:
        merged: dict[str, str] = {}
        for choices in self._name_choices.values():
            merged.update(choices)
        return merged

    def treatments_for(
        self,
        condition_id: str,
        tier: str,
        animal_type: AnimalType,
    ) -> list[TreatmentRecord]:
        return [
            t for t in self._treatments.get(condition_id, ())
            if t.tier == tier and t.applies_to(animal_type)
        ]

    def match_symptoms(self, text: str) -> set[str]:
        """Return symptom ids whose keywords occur as phrases in ``text``."""
        padded = f" {normalize_text(text)} "
        matched: set[str] = set()
        for kw, symptom_ids in self._keyword_index.items():
            if f" {kw} " in padded:
                matched.update(symptom_ids)
        return matched

    def __len__(self) -> int:
        return len(self.diseases)


# ---------------------------------------------------------------------------
# Building and validation
# ---------------------------------------------------------------------------

def _check_integrity(kb: _KnowledgeBaseFile) -> None:
    """Referential and uniqueness checks beyond the per-record schema."""
    problems: list[str] = []

    def _dupes(ids: list[str]) -> list[str]:
        return [i for i, n in Counter(ids).items() if n > 1]

    for label, ids in (
        ("disease", [d.condition_id for d in kb.diseases]),
        ("symptom", [s.symptom_id for s in kb.symptoms]),
        ("treatment", [t.treatment_id for t in kb.treatments]),
    ):
        for dup in sorted(_dupes(ids)):
            problems.append(f"duplicate {label} id {dup!r}")

    symptom_ids = {s.symptom_id for s in kb.symptoms}
    disease_ids = {d.condition_id for d in kb.diseases}

    for d in kb.diseases:
        for sid in d.symptom_ids:
            if sid not in symptom_ids:
                problems.append(f"disease {d.condition_id!r} references unknown symptom {sid!r}")

    for t in kb.treatments:
        if t.condition_id not in disease_ids:
            problems.append(f"treatment {t.treatment_id!r} references unknown disease {t.condition_id!r}")
        if t.tier not in TREATMENT_TIERS:
            problems.append(f"treatment {t.treatment_id!r} has invalid tier {t.tier!r}")

    if not kb.diseases:
        problems.append("knowledge base has no diseases")

    if problems:
        raise DataIntegrityError("; ".join(problems))


def build_snapshot(raw: dict[str, Any], version: Optional[str] = None) -> KnowledgeBaseSnapshot:
    """Validate a parsed knowledge-base document and index it.

    Raises:
        DataIntegrityError: if the document fails schema or referential checks.
    """
    try:
        kb = _KnowledgeBaseFile.model_validate(raw)
    except ValidationError as exc:
        raise DataIntegrityError(f"knowledge base schema invalid: {exc.error_count()} errors") from exc
    _check_integrity(kb)
    return KnowledgeBaseSnapshot(
        version=kb.version or version or "unversioned",
        diseases=kb.diseases,
        symptoms=kb.symptoms,
        treatments=kb.treatments,
    )


def load_snapshot(path: str | Path) -> KnowledgeBaseSnapshot:
    """Read and validate a knowledge-base JSON file."""
    path = Path(path)
    try:
        content = path.read_bytes()
        raw = json.loads(content)
    except (OSError, json.JSONDecodeError) as exc:
        raise DataIntegrityError(f"cannot read knowledge base {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise DataIntegrityError("knowledge base root must be an object")
    digest = hashlib.sha256(content).hexdigest()[:12]
    return build_snapshot(raw, version=digest)


# ---------------------------------------------------------------------------
# Reloadable store
# ---------------------------------------------------------------------------

class KnowledgeBase:
    """Reloadable holder of the active KnowledgeBaseSnapshot."""

    def __init__(self, path: str | Path | None = None, snapshot: KnowledgeBaseSnapshot | None = None) -> None:
        self.path = Path(path or settings.KNOWLEDGE_BASE_PATH)
        self._holder: SnapshotHolder[KnowledgeBaseSnapshot] = SnapshotHolder(snapshot)

    def current(self) -> KnowledgeBaseSnapshot:
        snapshot = self._holder.current()
        if snapshot is None:
            snapshot = self.reload()
        return snapshot

    def install(self, snapshot: KnowledgeBaseSnapshot) -> KnowledgeBaseSnapshot:
        self._holder.swap(snapshot)
        logger.info(
            "knowledge_base: installed version=%s diseases=%d generation=%d",
            snapshot.version, len(snapshot), self._holder.generation,
        )
        return snapshot

    def reload(self, path: str | Path | None = None) -> KnowledgeBaseSnapshot:
        """Load the file and swap it in.

        Raises:
            DataIntegrityError: the file is invalid; the active snapshot is
                left untouched.
        """
        target = Path(path) if path else self.path
        try:
            snapshot = load_snapshot(target)
        except DataIntegrityError as exc:
            active = self._holder.current()
            logger.error(
                "knowledge_base: reload rejected path=%s active_version=%s reason=%s",
                target, active.version if active else None, exc.message,
            )
            raise
        return self.install(snapshot)


if __name__ == "__main__":
    snap = load_snapshot(settings.KNOWLEDGE_BASE_PATH)
    print(f"Loaded knowledge base version {snap.version}: {len(snap)} diseases")
    for animal in AnimalType:
        print(f"  {animal.value}: {len(snap.diseases_for(animal))} diseases")
