"""
Drug name and dosage canonicalisation.

``normalize`` turns the free text typed into the search box or the
listing form into a set of comparable tokens plus a parsed dosage.  It
is pure: no database access, no settings writes, same output for the
same input.
"""
from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Mapping, Optional

# Brand -> generic.  Keys and values are already lower-case.
BRAND_SYNONYMS: dict[str, str] = {
    'amoxil': 'amoxicillin',
    'trimox': 'amoxicillin',
    'augmentin': 'amoxicillin clavulanate',
    'zithromax': 'azithromycin',
    'keflex': 'cephalexin',
    'cipro': 'ciprofloxacin',
    'tylenol': 'acetaminophen',
    'panadol': 'acetaminophen',
    'paracetamol': 'acetaminophen',
    'advil': 'ibuprofen',
    'motrin': 'ibuprofen',
    'zestril': 'lisinopril',
    'prinivil': 'lisinopril',
    'lipitor': 'atorvastatin',
    'crestor': 'rosuvastatin',
    'glucophage': 'metformin',
    'lasix': 'furosemide',
    'coumadin': 'warfarin',
    'ventolin': 'salbutamol',
    'albuterol': 'salbutamol',
    'synthroid': 'levothyroxine',
    'norvasc': 'amlodipine',
    'prilosec': 'omeprazole',
    'losec': 'omeprazole',
    'zofran': 'ondansetron',
    'solu-medrol': 'methylprednisolone',
    'lovenox': 'enoxaparin',
}

# Dose-form and packaging words that carry no identity.
NOISE_WORDS = frozenset({
    'tab', 'tabs', 'tablet', 'tablets', 'cap', 'caps', 'capsule', 'capsules',
    'oral', 'po', 'iv', 'im', 'inj', 'injection', 'solution', 'susp', 'suspension',
    'vial', 'vials', 'amp', 'ampoule', 'bottle', 'box', 'pack', 'units', 'unit',
    'er', 'sr', 'xr', 'generic', 'brand', 'of', 'and', 'the', 'for',
})

# Units a dosage may be written in, mapped to (canonical unit, factor to it).
_UNITS: dict[str, tuple[str, float]] = {
    'g': ('mg', 1000.0),
    'gm': ('mg', 1000.0),
    'gram': ('mg', 1000.0),
    'grams': ('mg', 1000.0),
    'mg': ('mg', 1.0),
    'mcg': ('mg', 0.001),
    'ug': ('mg', 0.001),
    'microgram': ('mg', 0.001),
    'micrograms': ('mg', 0.001),
    'ml': ('ml', 1.0),
    'l': ('ml', 1000.0),
    'iu': ('iu', 1.0),
    'meq': ('meq', 1.0),
    '%': ('%', 1.0),
    'mg/ml': ('mg/ml', 1.0),
    'mg/5ml': ('mg/5ml', 1.0),
    'mcg/ml': ('mg/ml', 0.001),
}

_DOSAGE_RE = re.compile(
    r'(?P<value>\d+(?:[.,]\d+)?)\s*(?P<unit>mg/5ml|mg/ml|mcg/ml|micrograms?|grams?|mcg|ug|mg|gm|g|ml|l|iu|meq|%)(?![a-z])',
    re.IGNORECASE,
)
_PUNCT_RE = re.compile(r"[^\w\s%/.-]+")
_SPLIT_RE = re.compile(r"[\s/,;()\[\]]+")


@dataclass(frozen=True)
class Dosage:
    """Parsed strength.  ``value`` is expressed in ``unit`` after conversion."""
    value: float
    unit: str

    def matches(self, other: Optional['Dosage'], tolerance: float = 0.001) -> bool:
        if other is None or other.unit != self.unit:
            return False
        scale = max(abs(self.value), abs(other.value), 1e-9)
        return abs(self.value - other.value) / scale <= tolerance

    def __str__(self) -> str:
        value = int(self.value) if float(self.value).is_integer() else self.value
        return f"{value}{self.unit}"


@dataclass(frozen=True)
class NormalizedName:
    tokens: frozenset[str]
    canonical: str
    dosage: Optional[Dosage]
    synonym_applied: bool = False


def _fold(text: str) -> str:
    text = unicodedata.normalize('NFKD', text or '')
    text = ''.join(ch for ch in text if not unicodedata.combining(ch))
    # NFKD maps the micro sign to greek mu
    text = text.replace('\u03bc', 'u')
    return text.lower().strip()


def parse_dosage(raw: Optional[str]) -> Optional[Dosage]:
    """Return the first strength found in ``raw``, or None.

    >>> parse_dosage('500mg')
    Dosage(value=500.0, unit='mg')
    >>> parse_dosage('0.5 g')
    Dosage(value=500.0, unit='mg')
    """
    if not raw:
        return None
    m = _DOSAGE_RE.search(_fold(raw))
    if not m:
        return None
    value = float(m.group('value').replace(',', '.'))
    unit, factor = _UNITS[m.group('unit').lower()]
    return Dosage(value=round(value * factor, 6), unit=unit)


def _tokenize(text: str) -> list[str]:
    text = _DOSAGE_RE.sub(' ', text)
    text = _PUNCT_RE.sub(' ', text)
    tokens = []
    for raw in _SPLIT_RE.split(text):
        tok = raw.strip('.-')
        if not tok or tok in NOISE_WORDS:
            continue
        if tok.replace('.', '').isdigit():
            continue
        tokens.append(tok)
    return tokens


def normalize(raw_name: str, raw_dosage: Optional[str] = None,
              synonyms: Optional[Mapping[str, str]] = None) -> NormalizedName:
    """Canonicalise a drug name and its dosage.

    Brand names found in the synonym table are replaced by their generic
    tokens; unknown names pass through untouched so that matching falls
    back to plain lexical similarity.  When ``raw_dosage`` is empty the
    strength is looked for inside the name itself ("Amoxil 500mg").
    """
    table = dict(BRAND_SYNONYMS)
    if synonyms:
        table.update({_fold(k): _fold(v) for k, v in synonyms.items()})

    folded = _fold(raw_name)
    dosage = parse_dosage(raw_dosage) or parse_dosage(folded)

    ordered: list[str] = []
    applied = False
    for tok in _tokenize(folded):
        generic = table.get(tok)
        if generic:
            applied = True
            expanded = generic.split()
        else:
            expanded = [tok]
        for t in expanded:
            if t not in ordered:
                ordered.append(t)

    return NormalizedName(
        tokens=frozenset(ordered),
        canonical=' '.join(ordered),
        dosage=dosage,
        synonym_applied=applied,
    )
