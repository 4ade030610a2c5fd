"""
Wallboard slot layout.

Slots are stored as an opaque JSON list under the tenant setting
`mikrotik_wallboard_slots_json`. Each entry maps a grid position to a router
interface and optional low-rate floors. Older layouts stored a bare router id,
which tracks `ether1` on that router.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from mikronoc import cache
from mikronoc.errors import ValidationError
from mikronoc.services import settings_service

logger = logging.getLogger(__name__)

DEFAULT_INTERFACE = 'ether1'
TRACKED_CACHE_TTL_SECS = 60
MAX_SLOTS = 64


@dataclass(frozen=True)
class WallboardSlot:
    position: int
    router_id: int
    interface_name: str
    warn_below_rx_bps: Optional[int] = None
    warn_below_tx_bps: Optional[int] = None

    @property
    def key(self) -> Tuple[int, str]:
        return self.router_id, self.interface_name

    def to_dict(self) -> Dict[str, Any]:
        return {
            'position': self.position,
            'router_id': self.router_id,
            'interface_name': self.interface_name,
            'warn_below_rx_bps': self.warn_below_rx_bps,
            'warn_below_tx_bps': self.warn_below_tx_bps,
        }


def _pick(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] not in (None, ''):
            return data[key]
    return None


def _optional_floor(value: Any) -> Optional[int]:
    if value in (None, ''):
        return None
    try:
        floor = int(float(value))
    except (TypeError, ValueError):
        return None
    return floor if floor > 0 else None


def _decode_entry(entry: Any, position: int) -> Optional[WallboardSlot]:
    if entry is None:
        return None
    if isinstance(entry, (str, int)) and not isinstance(entry, bool):
        try:
            return WallboardSlot(position=position, router_id=int(str(entry).strip()), interface_name=DEFAULT_INTERFACE)
        except ValueError:
            return None
    if not isinstance(entry, dict):
        return None

    raw_router = _pick(entry, 'routerId', 'router_id')
    iface = str(_pick(entry, 'iface', 'interface', 'interface_name') or '').strip()
    try:
        router_id = int(str(raw_router).strip())
    except (TypeError, ValueError):
        return None
    if not iface:
        return None
    raw_position = _pick(entry, 'position', 'slot')
    try:
        slot_position = int(raw_position) if raw_position is not None else position
    except (TypeError, ValueError):
        slot_position = position
    return WallboardSlot(
        position=slot_position,
        router_id=router_id,
        interface_name=iface,
        warn_below_rx_bps=_optional_floor(_pick(entry, 'warnBelowRxBps', 'warn_below_rx_bps')),
        warn_below_tx_bps=_optional_floor(_pick(entry, 'warnBelowTxBps', 'warn_below_tx_bps')),
    )


def parse_slots(raw: Any) -> List[WallboardSlot]:
    """Decode a stored layout; malformed entries are dropped."""
    if raw in (None, ''):
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning('Ignoring malformed wallboard layout')
            return []
    if not isinstance(raw, list):
        return []
    slots = []
    for index, entry in enumerate(raw):
        slot = _decode_entry(entry, index)
        if slot is not None:
            slots.append(slot)
    return slots


def load_slots(tenant_id: Optional[int]) -> List[WallboardSlot]:
    return parse_slots(settings_service.get_setting(tenant_id, settings_service.WALLBOARD_SLOTS))


def save_slots(tenant_id: Optional[int], entries: Any, user_id: Optional[int] = None) -> List[WallboardSlot]:
    if not isinstance(entries, list):
        raise ValidationError('slots must be a list')
    if len(entries) > MAX_SLOTS:
        raise ValidationError(f'at most {MAX_SLOTS} wallboard slots are supported')

    slots = []
    for index, entry in enumerate(entries):
        if entry is None:
            continue
        slot = _decode_entry(entry, index)
        if slot is None:
            raise ValidationError(f'slot {index} needs a router id and an interface name')
        slots.append(slot)

    settings_service.set_setting(
        tenant_id,
        settings_service.WALLBOARD_SLOTS,
        [slot.to_dict() for slot in slots],
        user_id=user_id,
    )
    invalidate_tracked_cache(tenant_id)
    return slots


GLOBAL_GENERATION_KEY = 'mikronoc:wallboard:tracked:generation'


def _cache_key(tenant_id: Optional[int]) -> str:
    # tenant entries may hold the global layout, so they are keyed on its generation
    generation = cache.get(GLOBAL_GENERATION_KEY) or 0
    scope = tenant_id if tenant_id is not None else 'global'
    return f'mikronoc:wallboard:tracked:{generation}:{scope}'


def invalidate_tracked_cache(tenant_id: Optional[int]) -> None:
    if tenant_id is None:
        generation = cache.get(GLOBAL_GENERATION_KEY) or 0
        cache.set(GLOBAL_GENERATION_KEY, generation + 1, timeout=0)
        return
    cache.delete(_cache_key(tenant_id))


def tracked_interfaces_by_router(tenant_id: Optional[int]) -> Dict[int, Set[str]]:
    """Interfaces selected on the wallboard, grouped by router. Cached for a minute."""
    key = _cache_key(tenant_id)
    cached = cache.get(key)
    if cached is None:
        cached = {}
        for slot in load_slots(tenant_id):
            names = cached.setdefault(slot.router_id, [])
            if slot.interface_name not in names:
                names.append(slot.interface_name)
        cache.set(key, cached, timeout=TRACKED_CACHE_TTL_SECS)
    return {int(router_id): set(names) for router_id, names in cached.items()}


def slot_floors(tenant_id: Optional[int]) -> Dict[Tuple[int, str], Tuple[Optional[int], Optional[int]]]:
    """Lowest configured rx/tx floor per tracked interface."""
    floors: Dict[Tuple[int, str], Tuple[Optional[int], Optional[int]]] = {}
    for slot in load_slots(tenant_id):
        rx_floor, tx_floor = floors.get(slot.key, (None, None))
        floors[slot.key] = (
            _min_floor(rx_floor, slot.warn_below_rx_bps),
            _min_floor(tx_floor, slot.warn_below_tx_bps),
        )
    return floors


def _min_floor(current: Optional[int], candidate: Optional[int]) -> Optional[int]:
    if current is None:
        return candidate
    if candidate is None:
        return current
    return min(current, candidate)
