"""
Record types for the core catalog and the age-model pipeline.

Stored rows use snake_case keys.  Proxy records are open-ended: ``depth`` and
``age`` are typed, every other key is a named proxy measurement.
"""

import math
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Standard proxy keys offered for data entry and CSV header mapping
PROXY_KEYS = {
    'depth': 'Depth (cmbsf)',
    'age': 'Age (ka BP)',
    'delta18O': 'δ18O (‰)',
    'delta13C': 'δ13C (‰)',
    'mgCaRatio': 'Mg/Ca (mmol/mol)',
    'tex86': 'TEX86',
    'alkenoneSST': 'Alkenone SST (°C)',
    'calculatedSST': 'Calculated SST (°C)',
    'baCa': 'Ba/Ca',
    'srCa': 'Sr/Ca',
    'cdCa': 'Cd/Ca',
    'radiocarbonDate': 'Radiocarbon Date (ka BP)',
}

RESERVED_KEYS = ('depth', 'age')

GeologicalPeriod = Literal['Glacial', 'Interglacial', 'Indeterminate']
Abundance = Literal['Abundant', 'Common', 'Few', 'Rare', 'Barren', 'Present']
Preservation = Literal['Good', 'Moderate', 'Poor']


# ---------------------------------------------------------------------------
# Proxy data
# ---------------------------------------------------------------------------

class ProxyRecord(BaseModel):
    """One sample of a section's proxy series.

    Extra keys hold proxy values (``delta18O``, ``mgCaRatio``, ...).
    """
    model_config = ConfigDict(extra='allow')

    depth: Optional[float] = None
    age: Optional[float] = None

    @field_validator('depth', 'age')
    @classmethod
    def _finite(cls, value):
        if value is not None and not math.isfinite(value):
            raise ValueError('must be a finite number')
        return value

    @property
    def proxies(self) -> dict[str, Any]:
        return dict(self.model_extra or {})

    def has_measurement(self) -> bool:
        return any(v is not None and v != '' for v in self.proxies.values())

    def to_dict(self) -> dict[str, Any]:
        """Plain mapping with unset ``depth``/``age`` left out."""
        data = {}
        if self.depth is not None:
            data['depth'] = self.depth
        if self.age is not None:
            data['age'] = self.age
        data.update(self.proxies)
        return data

    def with_age(self, age: Optional[float]) -> 'ProxyRecord':
        data = self.to_dict()
        data.pop('age', None)
        if age is not None:
            data['age'] = age
        return ProxyRecord(**data)


def merge_record(records, new_record, tolerance=0.0):
    """Merge ``new_record`` into a depth-ordered series.

    A record at an existing depth (within ``tolerance``) overwrites that
    record's other keys; the stored depth is kept.  Otherwise the record is
    appended.  Returns ``(records, updated)`` where ``updated`` tells which
    case applied.
    """
    if new_record.depth is None or not math.isfinite(new_record.depth):
        raise ValueError('Depth is a required field.')
    if not new_record.has_measurement():
        raise ValueError('At least one proxy value must be provided.')

    merged = list(records)
    updated = False
    for i, existing in enumerate(merged):
        if existing.depth is not None and abs(existing.depth - new_record.depth) <= tolerance:
            data = existing.to_dict()
            incoming = new_record.to_dict()
            incoming.pop('depth')
            data.update(incoming)
            merged[i] = ProxyRecord(**data)
            updated = True
            break
    if not updated:
        merged.append(new_record)

    merged.sort(key=lambda r: r.depth if r.depth is not None else 0.0)
    return merged, updated


def merge_records(records, new_records, tolerance=0.0):
    """Merge a batch of imported records by depth.

    Rows without a depth or without any proxy value are skipped.  Returns
    ``(records, loaded, skipped)``.
    """
    merged = list(records)
    loaded = skipped = 0
    for record in new_records:
        if record.depth is None or not record.has_measurement():
            skipped += 1
            continue
        merged, _ = merge_record(merged, record, tolerance)
        loaded += 1
    return merged, loaded, skipped


# ---------------------------------------------------------------------------
# Age model inputs
# ---------------------------------------------------------------------------

class TiePoint(BaseModel):
    section_id: str
    depth: float
    age: float

    @field_validator('depth', 'age')
    @classmethod
    def _finite(cls, value):
        if not math.isfinite(value):
            raise ValueError('must be a finite number')
        return value


class SpliceInterval(BaseModel):
    section_id: str
    start_age: Optional[float] = None
    end_age: Optional[float] = None

    def bounds(self):
        """Return ``(lo, hi)`` or None while either bound is unset."""
        if self.start_age is None or self.end_age is None:
            return None
        return min(self.start_age, self.end_age), max(self.start_age, self.end_age)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class Location(BaseModel):
    lat: float
    lon: float


class LabAnalysis(BaseModel):
    model_config = ConfigDict(extra='ignore')

    delta18O: Optional[float] = None
    delta13C: Optional[float] = None
    mgCaRatio: Optional[float] = None
    tex86: Optional[float] = None
    alkenoneSST: Optional[float] = None
    calculatedSST: Optional[float] = None
    baCa: Optional[float] = None
    srCa: Optional[float] = None
    cdCa: Optional[float] = None
    radiocarbonDate: Optional[float] = None


class SectionFossilRecord(BaseModel):
    fossil_id: str
    abundance: Abundance
    preservation: Preservation
    observations: str = ''


class Folder(BaseModel):
    id: str
    user_id: str
    name: str
    created_at: str = ''


class Core(BaseModel):
    id: str
    user_id: str
    name: str
    location: Location
    water_depth: float
    project: str = ''
    folder_id: Optional[str] = None
    created_at: str = ''


class SectionFields(BaseModel):
    """Editable section fields."""
    name: str
    section_depth: float = 0.0
    sample_interval: Optional[float] = None
    recovery_date: str = ''
    collection_time: Optional[str] = None
    epoch: str = ''
    geological_period: GeologicalPeriod = 'Indeterminate'
    age_range: str = ''
    data_points: list[ProxyRecord] = Field(default_factory=list)
    microfossil_records: list[SectionFossilRecord] = Field(default_factory=list)
    lab_analysis: Optional[LabAnalysis] = None
    summary: Optional[str] = None
    section_image: str = ''
    collector: Optional[str] = None
    lithology: Optional[str] = None
    munsell_color: Optional[str] = None
    grain_size: Optional[str] = None
    tephra_layers: Optional[str] = None
    paleomagnetic_reversals: Optional[str] = None


class Section(SectionFields):
    id: str
    core_id: str
    created_at: str = ''

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump(exclude={'data_points'})
        data['data_points'] = [dp.to_dict() for dp in self.data_points]
        return data


class Taxonomy(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kingdom: str = ''
    phylum: str = ''
    class_: str = Field('', alias='class')
    order: str = ''
    family: str = ''
    genus: str = 'Unknown'
    species: str = 'Fossil'


class Ecology(BaseModel):
    temperature_range: str = ''
    depth_habitat: str = ''
    notes: str = ''


class Microfossil(BaseModel):
    id: str
    taxonomy: Taxonomy = Field(default_factory=Taxonomy)
    description: str = ''
    stratigraphic_range: str = ''
    ecology: Ecology = Field(default_factory=Ecology)
    image_url: str = ''
    created_at: str = ''

    @property
    def display_name(self) -> str:
        return f'{self.taxonomy.genus} {self.taxonomy.species}'.strip()
