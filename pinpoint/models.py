from __future__ import annotations
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Iterator, List, Optional, Tuple

@dataclass(frozen=True)
class Coordinate:
    lat: float
    lon: float

    def as_tuple(self) -> Tuple[float, float]:
        return (self.lat, self.lon)

class CandidateKind(str, Enum):
    ADDRESS = "address"
    PLACE_NAME = "place_name"
    NAMED_ROAD = "named_road"
    LOCAL_POINT = "local_point"
    FOREIGN_ADDRESS = "foreign_address"

@dataclass
class Candidate:
    """所有数据源归一化后的候选结果；具体类型见下方子类。"""
    kind: ClassVar[CandidateKind]

    display_text: str
    coordinate: Optional[Coordinate] = None
    source_tag: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    def is_name_like(self) -> bool:
        raise NotImplementedError

@dataclass
class AddressCandidate(Candidate):
    kind: ClassVar[CandidateKind] = CandidateKind.ADDRESS
    address_id: Optional[str] = None

    def is_name_like(self) -> bool:
        return False

@dataclass
class PlaceNameCandidate(Candidate):
    kind: ClassVar[CandidateKind] = CandidateKind.PLACE_NAME

    def is_name_like(self) -> bool:
        return True

@dataclass
class NamedRoadCandidate(Candidate):
    kind: ClassVar[CandidateKind] = CandidateKind.NAMED_ROAD
    road_id: Optional[str] = None

    def is_name_like(self) -> bool:
        return True

@dataclass
class LocalPointCandidate(Candidate):
    kind: ClassVar[CandidateKind] = CandidateKind.LOCAL_POINT
    # curated=True: 人工维护的特殊地点；False: 本地缓存的点数据集
    curated: bool = False

    def is_name_like(self) -> bool:
        return self.curated

@dataclass
class ForeignAddressCandidate(Candidate):
    kind: ClassVar[CandidateKind] = CandidateKind.FOREIGN_ADDRESS
    country: Optional[str] = None

    def is_name_like(self) -> bool:
        return False

@dataclass
class RankedList:
    query: str
    candidates: List[Candidate] = field(default_factory=list)
    failed_sources: List[str] = field(default_factory=list)

    def __iter__(self) -> Iterator[Candidate]:
        return iter(self.candidates)

    def __len__(self) -> int:
        return len(self.candidates)

class PlacementMode(str, Enum):
    TRANSIENT = "transient"
    RETAINED = "retained"
    REMOTE_PERSISTED = "remote_persisted"

@dataclass
class MarkerMeta:
    note: str = ""
    address_text: str = ""
    postal_code: Optional[str] = None
    reverse_geocode: Optional[Dict[str, Any]] = None
    highlighted: bool = False

def _handle() -> str:
    return uuid.uuid4().hex[:10]

@dataclass(eq=False)
class Marker:
    # eq=False：标记以对象引用作为身份
    coordinate: Coordinate
    mode: PlacementMode = PlacementMode.TRANSIENT
    meta: MarkerMeta = field(default_factory=MarkerMeta)
    stable_id: Optional[str] = None
    remote_id: Optional[str] = None
    handle: str = field(default_factory=_handle)

@dataclass
class MarkerRecord:
    id: str
    stable_id: str
    workspace: str
    map_id: str
    lat: float
    lon: float
    note: str = ""
    address_text: str = ""
    postal_code: Optional[str] = None
    hidden: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    hidden_at: Optional[str] = None

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(float(self.lat), float(self.lon))

class RestoreScope(str, Enum):
    LAST_ACTION = "last"
    LAST_HOUR = "hour"
    LAST_DAY = "day"

@dataclass
class RestoreResult:
    scope: RestoreScope
    restored_ids: List[str] = field(default_factory=list)

    @property
    def noop(self) -> bool:
        return not self.restored_ids

@dataclass
class QuotaInfo:
    remaining: Optional[int] = None
    limit: Optional[int] = None
    reset: Optional[int] = None

@dataclass
class ReverseGeocodeResult:
    address_text: str
    postal_code: Optional[str] = None
    provider: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)
