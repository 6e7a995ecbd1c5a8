"""Natural-key extraction and duplicate detection for Procore vendors.

A vendor's natural key is its Australian Business Number. Procore has no
dedicated ABN field, so it is pulled from whichever field carries it, in a
fixed order of preference:

1. entity_id, when entity_type is "abn" (taken verbatim)
2. tax_id
3. business_id
4. abbreviated_name

Fields 2-4 only count when they hold exactly 11 digits once whitespace is
removed. The check is syntactic; the ABN checksum is not validated.

ConflictResolver turns extracted keys into conflicts against the local
subcontractor table with one batched lookup per run.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

import structlog

from src.shield.integrations.procore.schemas import (
    LocalSubcontractor,
    ProcoreVendor,
    VendorSyncStatus,
)
from src.shield.integrations.procore.stores import LocalEntityStore

logger = structlog.get_logger(__name__)

_ABN_PATTERN = re.compile(r"^\d{11}$")


@dataclass(frozen=True)
class KeyFound:
    value: str
    source_field: str


@dataclass(frozen=True)
class KeyNotFound:
    pass


NaturalKey = KeyFound | KeyNotFound


# ── Extractors ─────────────────────────────────────────────────────────────


def _from_entity_id(vendor: ProcoreVendor) -> str | None:
    if vendor.entity_type == "abn" and vendor.entity_id:
        return vendor.entity_id
    return None


def _eleven_digits(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = re.sub(r"\s", "", value)
    return cleaned if _ABN_PATTERN.match(cleaned) else None


KEY_EXTRACTORS: list[tuple[str, Callable[[ProcoreVendor], str | None]]] = [
    ("entity_id", _from_entity_id),
    ("tax_id", lambda vendor: _eleven_digits(vendor.tax_id)),
    ("business_id", lambda vendor: _eleven_digits(vendor.business_id)),
    ("abbreviated_name", lambda vendor: _eleven_digits(vendor.abbreviated_name)),
]


def extract_natural_key(vendor: ProcoreVendor) -> NaturalKey:
    """Return the first ABN found in preference order, or KeyNotFound."""
    for source_field, extractor in KEY_EXTRACTORS:
        value = extractor(vendor)
        if value:
            return KeyFound(value=value, source_field=source_field)
    return KeyNotFound()


def extract_abn(vendor: ProcoreVendor) -> str | None:
    key = extract_natural_key(vendor)
    return key.value if isinstance(key, KeyFound) else None


# ── Resolver ───────────────────────────────────────────────────────────────


class ConflictResolver:
    """Detects Procore vendors that duplicate an existing local subcontractor."""

    def __init__(self, entities: LocalEntityStore) -> None:
        self._entities = entities

    async def find_conflicts(
        self, company_id: str, keys: Iterable[str]
    ) -> dict[str, LocalSubcontractor]:
        """Map each natural key to the local subcontractor already holding it.

        Keys with no local match are absent from the result. When several
        local rows share one ABN the first returned wins.
        """
        unique_keys = sorted({key for key in keys if key})
        if not unique_keys:
            return {}

        existing = await self._entities.find_subcontractors_by_abn(company_id, unique_keys)
        conflicts: dict[str, LocalSubcontractor] = {}
        for subcontractor in existing:
            if subcontractor.abn and subcontractor.abn not in conflicts:
                conflicts[subcontractor.abn] = subcontractor

        logger.debug(
            "procore_conflicts.lookup",
            company_id=company_id,
            keys=len(unique_keys),
            conflicts=len(conflicts),
        )
        return conflicts

    async def classify(
        self,
        company_id: str,
        vendors: Iterable[ProcoreVendor],
        mappings: Mapping[int, str],
    ) -> dict[int, tuple[VendorSyncStatus, LocalSubcontractor | None]]:
        """Sync status per vendor id for listing screens.

        A mapped vendor is always "synced", even when its ABN also matches
        another local subcontractor.
        """
        vendors = list(vendors)
        unmapped_keys = {
            vendor.id: abn
            for vendor in vendors
            if vendor.id not in mappings and (abn := extract_abn(vendor))
        }
        conflicts = await self.find_conflicts(company_id, unmapped_keys.values())

        statuses: dict[int, tuple[VendorSyncStatus, LocalSubcontractor | None]] = {}
        for vendor in vendors:
            if vendor.id in mappings:
                statuses[vendor.id] = (VendorSyncStatus.SYNCED, None)
                continue
            existing = conflicts.get(unmapped_keys.get(vendor.id, ""))
            if existing is not None:
                statuses[vendor.id] = (VendorSyncStatus.ABN_CONFLICT, existing)
            else:
                statuses[vendor.id] = (VendorSyncStatus.NOT_SYNCED, None)
        return statuses
