"""
Validation models for container dumps posted by the capture agent.

Two envelope shapes are accepted on ingest:
- a regular dump (party, daycare, a single PC box, ...) with a `pokemon` list;
- an aggregated PC dump `{source: {container_type: 'pc_boxes'}, boxes: {...}}`
  whose boxes are regular dumps.

Numbers must be real JSON integers (no floats, no booleans). Unknown keys are
dropped.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr, ValidationError

from utils.api_models import ValidationIssue
from utils.constants import CONTAINER_TYPES, NATURES, PC_BOXES_SOURCE

ContainerType = Literal[CONTAINER_TYPES]
Nature = Literal[NATURES]


class DumpModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class StatBlock(DumpModel):
    """One IV or EV spread. `def` is a Python keyword, hence the alias."""

    hp: StrictInt = Field(ge=0)
    atk: StrictInt = Field(ge=0)
    def_: StrictInt = Field(alias="def", ge=0)
    spa: StrictInt = Field(ge=0)
    spd: StrictInt = Field(ge=0)
    spe: StrictInt = Field(ge=0)


class Stats(DumpModel):
    evs: StatBlock
    ivs: StatBlock


class Identity(DumpModel):
    uuid: Union[StrictInt, StrictStr]
    species_id: StrictInt = Field(ge=1)
    form_id: Optional[StrictInt]
    nickname: StrictStr
    ot_name: StrictStr
    personality_value: StrictInt
    is_shiny: StrictBool = False
    is_gift: StrictBool = False
    is_alpha: StrictBool = False


class PokemonState(DumpModel):
    level: StrictInt = Field(ge=1, le=100)
    nature: Nature
    current_hp: Optional[StrictInt] = Field(ge=0)
    xp: Optional[StrictInt]
    happiness: Optional[StrictInt] = Field(ge=0, le=255)


class MoveSlot(DumpModel):
    move_id: StrictInt
    pp: Optional[StrictInt] = Field(ge=0)


class AbilityRef(DumpModel):
    id: Optional[StrictInt] = None
    slot: Optional[StrictInt] = None


class PokemonRecord(DumpModel):
    slot: StrictInt
    box_id: Optional[StrictStr] = None
    box_slot: Optional[StrictInt] = None
    identity: Identity
    state: PokemonState
    stats: Stats
    moves: List[MoveSlot]
    ability: AbilityRef
    pokeapi_override: Optional[StrictStr] = None


class DumpSource(DumpModel):
    packet_class: StrictStr
    container_id: StrictInt
    container_type: ContainerType
    capacity: Optional[StrictInt] = None


class DumpEnvelope(DumpModel):
    schema_version: StrictInt
    captured_at_ms: StrictInt
    source: DumpSource
    pokemon: List[PokemonRecord]

    @property
    def container_type(self) -> str:
        return self.source.container_type


class PcBoxesSource(DumpModel):
    container_type: Literal["pc_boxes"]


class PcBoxesEnvelope(DumpModel):
    source: PcBoxesSource
    boxes: Dict[StrictStr, DumpEnvelope]
    schema_version: Optional[StrictInt] = None
    captured_at_ms: Optional[StrictInt] = None

    @property
    def container_type(self) -> str:
        return PC_BOXES_SOURCE


Envelope = Union[DumpEnvelope, PcBoxesEnvelope]


def validate_envelope(payload: Any) -> Envelope:
    """
    Validate an ingest payload.

    The presence of a `boxes` key selects the aggregated PC shape.

    Raises:
        pydantic.ValidationError: If the payload matches neither shape.
    """
    if isinstance(payload, dict) and "boxes" in payload:
        return PcBoxesEnvelope.model_validate(payload)
    return DumpEnvelope.model_validate(payload)


def envelope_to_dict(envelope: Envelope) -> Dict[str, Any]:
    """Serialize an envelope back to the posted shape, without injected defaults."""
    return envelope.model_dump(mode="json", by_alias=True, exclude_unset=True)


def format_validation_issues(error: ValidationError) -> List[ValidationIssue]:
    """
    Convert a pydantic ValidationError into field-level issues.

    `path` is the dotted location of the offending value, e.g.
    'pokemon.0.state.nature'.
    """
    return [
        {
            "path": ".".join(str(part) for part in issue["loc"]),
            "message": issue["msg"],
            "type": issue["type"],
        }
        for issue in error.errors()
    ]
