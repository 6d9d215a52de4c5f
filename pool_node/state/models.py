import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class MiningState:
    """One getmininginfo reading. ``height`` is the node's ``blocks`` field."""

    height: int
    difficulty: float = 0.0
    network_hashps: float = 0.0
    pooled_tx: int = 0
    chain: str = ""
    current_block_weight: Optional[int] = None
    current_block_tx: Optional[int] = None
    warnings: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_rpc(cls, info: Dict[str, Any]) -> "MiningState":
        height = info.get("blocks")
        if not isinstance(height, int) or isinstance(height, bool) or height < 0:
            raise ValueError(f"getmininginfo returned invalid height: {height!r}")
        warnings = info.get("warnings", "")
        if isinstance(warnings, list):
            # Newer nodes report warnings as a list
            warnings = "; ".join(str(w) for w in warnings)
        return cls(
            height=height,
            difficulty=float(info.get("difficulty") or 0.0),
            network_hashps=float(info.get("networkhashps") or 0.0),
            pooled_tx=int(info.get("pooledtx") or 0),
            chain=info.get("chain", ""),
            current_block_weight=info.get("currentblockweight"),
            current_block_tx=info.get("currentblocktx"),
            warnings=warnings or "",
            raw=dict(info),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "height": self.height,
            "difficulty": self.difficulty,
            "network_hashps": self.network_hashps,
            "pooled_tx": self.pooled_tx,
            "chain": self.chain,
            "current_block_weight": self.current_block_weight,
            "current_block_tx": self.current_block_tx,
            "warnings": self.warnings,
        }


@dataclass(frozen=True)
class WorkTemplate:
    """A getblocktemplate result as persisted for one coordination height."""

    height: int
    transactions: List[Dict[str, Any]]
    previous_block_hash: str
    bits: str
    coinbase_value: int
    payload: str = field(repr=False)

    @classmethod
    def from_payload(cls, height: int, payload: str) -> "WorkTemplate":
        r = json.loads(payload)
        if not isinstance(r, dict):
            raise ValueError(f"template payload for height {height} is not an object")
        return cls(
            height=height,
            transactions=r.get("transactions", []),
            previous_block_hash=r.get("previousblockhash", ""),
            bits=r.get("bits", ""),
            coinbase_value=int(r.get("coinbasevalue") or 0),
            payload=payload,
        )

    @property
    def raw(self) -> Dict[str, Any]:
        """Full node-supplied template, decoded fresh so callers cannot mutate shared state."""
        return json.loads(self.payload)


@dataclass
class TemplateRecord:
    """
    Persisted row keyed by height.

    A record without payload but with an owner is an in-progress fetch lock;
    ``acquired_at`` is the lease start in epoch seconds.
    """

    height: int
    payload: Optional[str] = None
    owner: Optional[str] = None
    acquired_at: Optional[float] = None

    @property
    def is_ready(self) -> bool:
        return self.payload is not None

    @property
    def is_locked(self) -> bool:
        return self.payload is None and self.owner is not None

    def lease_expired(self, ttl: float, now: Optional[float] = None) -> bool:
        if not self.is_locked or ttl <= 0:
            return False
        if self.acquired_at is None:
            return True
        now = time.time() if now is None else now
        return now - self.acquired_at >= ttl


@dataclass(frozen=True)
class StaleSignal:
    """Published once the node has been unreachable for several refresh cycles."""

    consecutive_failures: int
    since: float
    last_error: str = ""
