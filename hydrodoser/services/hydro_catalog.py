"""
Fertilizer reference catalog.

Loads hydro_fertilizers.json once per process and exposes lookups by id,
name or alias together with the solubility, compatibility class and ion
dissociation data every other service reads. The catalog is never mutated
after loading.
"""
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Any, Iterable

from pydantic import ValidationError

from hydrodoser.schemas.hydro_schemas import Fertilizer, CompatibilityTag
from hydrodoser.services.hydro_chemistry import DEFAULT_SOLUBILITY_GL

logger = logging.getLogger(__name__)

CATALOG_PATH = Path(__file__).parent.parent / "data" / "hydro_fertilizers.json"

_DEFAULT_CATALOG = None


class FertilizerCatalog:
    """Read-only collection of fertilizers keyed by id."""

    def __init__(
        self,
        fertilizers: Iterable[Fertilizer],
        default_solubility: float = DEFAULT_SOLUBILITY_GL,
        common_ids: Optional[List[str]] = None,
    ):
        self._by_id: Dict[str, Fertilizer] = {}
        for fert in fertilizers:
            if fert.id in self._by_id:
                logger.warning(f"[Catalog] Duplicate fertilizer id '{fert.id}', keeping first entry")
                continue
            self._by_id[fert.id] = fert
        self.default_solubility = default_solubility
        self._common_ids = [fid for fid in (common_ids or []) if fid in self._by_id]

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, fert_id: str) -> bool:
        return fert_id in self._by_id

    def __iter__(self):
        return iter(self._by_id.values())

    @property
    def ids(self) -> List[str]:
        return list(self._by_id.keys())

    def get(self, fert_id: str) -> Optional[Fertilizer]:
        return self._by_id.get(fert_id)

    def find(self, query: str) -> Optional[Fertilizer]:
        """
        Look up a fertilizer by id, display name or alias (case-insensitive).
        An exact id match always wins over names and aliases.
        """
        if not query:
            return None
        if query in self._by_id:
            return self._by_id[query]

        needle = query.strip().lower()
        for fert in self._by_id.values():
            if fert.id.lower() == needle or fert.name.lower() == needle:
                return fert
        for fert in self._by_id.values():
            if any(alias.lower() == needle for alias in fert.aliases):
                return fert
        return None

    def resolve_ids(self, fert_ids: Iterable[str]) -> List[Fertilizer]:
        """Map ids to fertilizers, dropping unknown ids and duplicates."""
        resolved = []
        seen = set()
        for fert_id in fert_ids:
            fert = self._by_id.get(fert_id)
            if fert is None:
                logger.debug(f"[Catalog] Unknown fertilizer id '{fert_id}' ignored")
                continue
            if fert.id in seen:
                continue
            seen.add(fert.id)
            resolved.append(fert)
        return resolved

    def get_solubility(self, fert_id: str) -> float:
        fert = self._by_id.get(fert_id)
        if fert is None or not fert.solubility_gL:
            return self.default_solubility
        return fert.solubility_gL

    def get_compatibility_tag(self, fert_id: str) -> CompatibilityTag:
        fert = self._by_id.get(fert_id)
        if fert is None or fert.compatibility is None:
            return CompatibilityTag.NEUTRAL
        return fert.compatibility

    def get_ion_stoichiometry(self, fert_id: str) -> Optional[Dict[str, Any]]:
        """Return {'molar_mass', 'ions'} or None when no dissociation data is known."""
        fert = self._by_id.get(fert_id)
        if fert is None or fert.ion_balance is None:
            return None
        return {
            "molar_mass": fert.ion_balance.molar_mass,
            "ions": list(fert.ion_balance.ions),
        }

    def common_fertilizers(self) -> List[Fertilizer]:
        return [self._by_id[fid] for fid in self._common_ids]

    @classmethod
    def from_dicts(
        cls,
        entries: Iterable[Dict[str, Any]],
        default_solubility: float = DEFAULT_SOLUBILITY_GL,
        common_ids: Optional[List[str]] = None,
    ) -> "FertilizerCatalog":
        """Build a catalog from raw dicts, skipping entries that fail validation."""
        fertilizers = []
        for entry in entries:
            try:
                fertilizers.append(Fertilizer.model_validate(entry))
            except ValidationError as e:
                logger.warning(f"[Catalog] Skipping invalid fertilizer entry {entry.get('id', '?')}: {e}")
        return cls(fertilizers, default_solubility=default_solubility, common_ids=common_ids)


def load_fertilizer_catalog(path: Optional[Path] = None) -> FertilizerCatalog:
    """
    Load the fertilizer catalog from JSON.

    Raises FileNotFoundError when the file is missing; reference data is
    mandatory for every calculation.
    """
    config_path = Path(path) if path is not None else CATALOG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Fertilizer catalog not found: {config_path}")

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"[Catalog] Error parsing {config_path.name}: {e}")
        raise

    catalog = FertilizerCatalog.from_dicts(
        data.get("fertilizers", []),
        default_solubility=data.get("default_solubility_gL", DEFAULT_SOLUBILITY_GL),
        common_ids=data.get("common_fertilizers", []),
    )
    logger.info(f"[Catalog] Loaded {len(catalog)} fertilizers from {config_path.name}")
    return catalog


def get_default_catalog() -> FertilizerCatalog:
    """Process-wide catalog loaded from the packaged JSON on first use."""
    global _DEFAULT_CATALOG

    if _DEFAULT_CATALOG is not None:
        return _DEFAULT_CATALOG

    _DEFAULT_CATALOG = load_fertilizer_catalog()
    return _DEFAULT_CATALOG

