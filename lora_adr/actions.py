"""
Action catalog: bijection between integer arm ids and (SF, TP) pairs.
  action_id = sf_index * len(tp_options) + tp_index
Defaults follow the EU868 region (SF7..SF12, 2..14 dBm in 2 dB steps).
"""
from __future__ import annotations
from typing import Dict, List, NamedTuple, Sequence, Tuple

from .errors import InvalidActionError

DEFAULT_SF_OPTIONS: Tuple[int, ...] = (7, 8, 9, 10, 11, 12)
DEFAULT_TP_OPTIONS: Tuple[int, ...] = (2, 4, 6, 8, 10, 12, 14)


class TxParams(NamedTuple):
    sf: int
    tp: int  # dBm


class ActionCatalog:
    def __init__(self,
                 sf_options: Sequence[int] = DEFAULT_SF_OPTIONS,
                 tp_options: Sequence[int] = DEFAULT_TP_OPTIONS) -> None:
        self.sf_options: Tuple[int, ...] = tuple(int(s) for s in sf_options)
        self.tp_options: Tuple[int, ...] = tuple(int(t) for t in tp_options)
        if not self.sf_options or not self.tp_options:
            raise ValueError("SF and TP option lists must be non-empty")
        if len(set(self.sf_options)) != len(self.sf_options) or len(set(self.tp_options)) != len(self.tp_options):
            raise ValueError("SF/TP options must not contain duplicates")
        self._sf_index: Dict[int, int] = {sf: i for i, sf in enumerate(self.sf_options)}
        self._tp_index: Dict[int, int] = {tp: i for i, tp in enumerate(self.tp_options)}

    def __len__(self) -> int:
        return len(self.sf_options) * len(self.tp_options)

    @property
    def size(self) -> int:
        return len(self)

    def encode(self, sf: int, tp: int) -> int:
        try:
            si = self._sf_index[int(sf)]
            ti = self._tp_index[int(tp)]
        except (KeyError, TypeError, ValueError):
            raise InvalidActionError(f"(SF{sf}, {tp} dBm) is not a configured action") from None
        return si * len(self.tp_options) + ti

    def decode(self, action_id: int) -> TxParams:
        self.validate(action_id)
        si, ti = divmod(int(action_id), len(self.tp_options))
        return TxParams(self.sf_options[si], self.tp_options[ti])

    def validate(self, action_id: int) -> int:
        if isinstance(action_id, bool) or not isinstance(action_id, int):
            raise InvalidActionError(f"action id must be an int, got {action_id!r}")
        if not 0 <= action_id < len(self):
            raise InvalidActionError(f"action id {action_id} outside [0, {len(self)})")
        return action_id

    def data_rate(self, action_id: int) -> int:
        # EU868: DR0 = SF12 ... DR5 = SF7
        return 12 - self.decode(action_id).sf

    @property
    def default_action(self) -> int:
        """Most robust setting (largest SF, highest power), used before any decision."""
        return self.encode(max(self.sf_options), max(self.tp_options))

    def items(self) -> List[Tuple[int, TxParams]]:
        return [(a, self.decode(a)) for a in range(len(self))]
