"""
PC box and daycare region utilities.

Groups captured PC Pokemon by box, orders box ids the way the game lists
them, and flattens the aggregated `boxes` envelope into a plain record list.
Daycare slots map to the region whose daycare holds them.
"""

from typing import Any, Dict, List, Mapping, Tuple

from utils.constants import (
    DAYCARE_REGIONS,
    PC_ACCOUNT_BOX,
    PC_BOX_PREFIX,
    PC_EXTRA_BOX_PREFIX,
    UNKNOWN_BOX,
    UNKNOWN_REGION,
)


def _box_number(box_id: str, prefix: str) -> int:
    try:
        return int(box_id[len(prefix):])
    except ValueError:
        return 0


def group_by_box(pokemon: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """
    Group Pokemon by `box_id`, each box sorted by slot.

    Records without a box id land in the 'unknown' box.
    """
    boxes: Dict[str, List[Dict[str, Any]]] = {}
    for mon in pokemon:
        boxes.setdefault(mon.get("box_id") or UNKNOWN_BOX, []).append(mon)

    for mons in boxes.values():
        mons.sort(key=_slot_of)

    return boxes


def _slot_of(mon: Mapping[str, Any]) -> int:
    box_slot = mon.get("box_slot")
    return box_slot if box_slot is not None else mon.get("slot", 0)


def _box_sort_key(box_id: str) -> Tuple[int, int, str]:
    if box_id.startswith(PC_BOX_PREFIX):
        return 0, _box_number(box_id, PC_BOX_PREFIX), box_id
    if box_id == PC_ACCOUNT_BOX:
        return 1, 0, box_id
    if box_id.startswith(PC_EXTRA_BOX_PREFIX):
        return 2, _box_number(box_id, PC_EXTRA_BOX_PREFIX), box_id
    return 3, 0, box_id


def sorted_box_ids(box_ids) -> List[str]:
    """
    Order box ids: box_1..box_N, account_box, extra_box_1..N, then the rest
    alphabetically.
    """
    return sorted(box_ids, key=_box_sort_key)


def box_display_name(box_id: str) -> str:
    """'box_3' -> 'Box 3', 'account_box' -> 'Account Box', 'extra_box_2' -> 'Extra Box 2'."""
    if box_id == PC_ACCOUNT_BOX:
        return "Account Box"
    if box_id.startswith(PC_BOX_PREFIX):
        return f"Box {box_id[len(PC_BOX_PREFIX):]}"
    if box_id.startswith(PC_EXTRA_BOX_PREFIX):
        return f"Extra Box {box_id[len(PC_EXTRA_BOX_PREFIX):]}"
    return box_id


def flatten_pc_envelope(envelope: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """
    Return the record list of a container envelope.

    Regular envelopes carry `pokemon` directly. Aggregated PC envelopes carry
    `boxes: {box_id: envelope}`; their records are tagged with the box id
    they came from unless they already have one. Records are copied, never
    modified in place.
    """
    if "boxes" not in envelope:
        return list(envelope.get("pokemon") or [])

    records: List[Dict[str, Any]] = []
    for box_id, box in (envelope.get("boxes") or {}).items():
        for mon in (box or {}).get("pokemon") or []:
            if mon.get("box_id"):
                records.append(mon)
            else:
                records.append({**mon, "box_id": box_id})
    return records


def region_for_slot(slot) -> str:
    """Daycare region id holding `slot`, or 'unknown' outside every range."""
    if not isinstance(slot, int) or isinstance(slot, bool):
        return UNKNOWN_REGION
    for region_id, _name, first, last in DAYCARE_REGIONS:
        if first <= slot <= last:
            return region_id
    return UNKNOWN_REGION


def region_display_name(region_id: str) -> str:
    for known_id, name, _first, _last in DAYCARE_REGIONS:
        if known_id == region_id:
            return name
    return region_id
