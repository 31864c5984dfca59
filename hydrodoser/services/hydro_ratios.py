"""
Ratio helpers: parsing user-entered ratio strings, summarizing a ppm profile
as nutrient ratios, and flagging calcium-incompatible combinations.
"""
import logging
import re
from typing import Dict, Any, List, Optional

from hydrodoser.services.hydro_catalog import FertilizerCatalog, get_default_catalog
from hydrodoser.services.hydro_chemistry import CATION_MEQ_FACTORS

logger = logging.getLogger(__name__)

RATIO_ORDER = ['N', 'P', 'K', 'Ca', 'Mg', 'S']
LABEL_MAP = {'N': 'N', 'P': 'P', 'K': 'K', 'CA': 'Ca', 'MG': 'Mg', 'S': 'S'}

LABELED_PATTERN = re.compile(r'^([A-Za-z]+[\d.]+:?)+$')
LABELED_PART = re.compile(r'^([A-Za-z]+)([\d.]+)$')


def parse_ratio(text: Any) -> Dict[str, Any]:
    """
    Parse a ratio string into {'ratio': {N, P, K, Ca, Mg, S}}.

    Accepts positional "2:1:3" (N:P:K:Ca:Mg:S order, missing values 0) or
    labelled "N2:P1:K3:Ca0.5". Returns {'error': message} on bad input.
    """
    if not text or not isinstance(text, str):
        return {'error': 'Invalid input: expected ratio string'}

    cleaned = re.sub(r'\s+', '', text.strip())
    if not cleaned:
        return {'error': 'Empty ratio string'}

    ratio = {key: 0.0 for key in RATIO_ORDER}

    if LABELED_PATTERN.match(cleaned):
        for part in filter(None, cleaned.split(':')):
            match = LABELED_PART.match(part)
            if not match:
                return {'error': f'Invalid labeled format: {part}'}
            label = match.group(1).upper()
            try:
                value = float(match.group(2))
            except ValueError:
                return {'error': f'Invalid number: {match.group(2)}'}
            key = LABEL_MAP.get(label)
            if key is None:
                return {'error': f'Unknown nutrient label: {label}'}
            ratio[key] = value
    else:
        parts = cleaned.split(':')
        for i, (key, raw) in enumerate(zip(RATIO_ORDER, parts)):
            try:
                ratio[key] = float(raw)
            except ValueError:
                return {'error': f'Invalid number at position {i + 1}: {raw}'}

    return {'ratio': ratio}


def _get_ratio(values: List[float], labels: List[str], decimals: int = 2) -> Optional[Dict[str, Any]]:
    nonzero = [v for v in values if v > 0]
    if not nonzero:
        return None
    min_value = min(nonzero)
    normalized = [round(v / min_value, decimals) if v > 0 else 0 for v in values]
    return {
        'name': ' : '.join(labels),
        'ratio': ' : '.join(f'{v:g}' for v in normalized),
        'normalized': normalized,
        'values': values,
        'labels': labels,
    }


def calculate_nutrient_ratios(ppm: Dict[str, float]) -> List[Dict[str, Any]]:
    """Summarize a ppm profile as N:P:K, N:P2O5:K2O, N:K, NO3:NH4, Ca:Mg, K:Ca and K:Ca:Mg (meq/L)."""
    n = ppm.get('N_total', ppm.get('N', 0)) or 0
    p = ppm.get('P', 0) or 0
    k = ppm.get('K', 0) or 0
    ca = ppm.get('Ca', 0) or 0
    mg = ppm.get('Mg', 0) or 0
    no3 = ppm.get('N_NO3', 0) or 0
    nh4 = ppm.get('N_NH4', 0) or 0

    ratios = []
    candidates = [
        _get_ratio([n, p, k], ['N', 'P', 'K']),
        _get_ratio([n, ppm.get('P2O5', 0) or 0, ppm.get('K2O', 0) or 0], ['N', 'P2O5', 'K2O']),
    ]
    if n > 0 and k > 0:
        candidates.append(_get_ratio([n, k], ['N', 'K']))
    if no3 > 0 or nh4 > 0:
        candidates.append(_get_ratio([no3, nh4], ['NO3', 'NH4']))
    if ca > 0 and mg > 0:
        candidates.append(_get_ratio([ca, mg], ['Ca', 'Mg']))
    if k > 0 and ca > 0:
        candidates.append(_get_ratio([k, ca], ['K', 'Ca']))
    ratios.extend(r for r in candidates if r)

    if k > 0 and ca > 0 and mg > 0:
        meq = [k * CATION_MEQ_FACTORS['K'], ca * CATION_MEQ_FACTORS['Ca'], mg * CATION_MEQ_FACTORS['Mg']]
        kcamg = _get_ratio(meq, ['K', 'Ca', 'Mg'])
        kcamg['name'] = 'K : Ca : Mg (meq/L basis)'
        kcamg['unit'] = 'meq/L'
        ratios.append(kcamg)

    return ratios


def has_incompatible_fertilizers(formula: Dict[str, float], catalog: Optional[FertilizerCatalog] = None) -> bool:
    """True when a calcium source is dosed together with a sulfate, phosphate or silicate source."""
    catalog = catalog if catalog is not None else get_default_catalog()
    active = [fid for fid, grams in formula.items() if grams and grams > 0]
    if len(active) < 2:
        return False

    has_calcium = has_sulfate = has_phosphate = has_silicate = False
    for fert_id in active:
        fert = catalog.get(fert_id)
        if fert is None:
            continue
        pct = fert.pct
        has_calcium = has_calcium or pct.get('Ca', 0) > 0 or pct.get('CaO', 0) > 0
        has_sulfate = has_sulfate or pct.get('S', 0) > 0
        has_phosphate = has_phosphate or pct.get('P2O5', 0) > 0 or pct.get('P', 0) > 0
        has_silicate = has_silicate or any(pct.get(key, 0) > 0 for key in ('SiO2', 'SiOH4', 'Si'))

    return has_calcium and (has_sulfate or has_phosphate or has_silicate)
