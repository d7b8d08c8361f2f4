from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from errors import POLICY_VIOLATION, AppError


def _parse_csv_list(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(v.strip().lower() for v in value.split(",") if v.strip())


def _env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw.strip(), 0)
    except ValueError:
        return default


@dataclass(frozen=True)
class PolicyConfig:
    """
    Caller-configured transaction limits.

    Every limit is opt-in. Limits are inclusive: a value equal to the limit passes.
    """

    name: str
    max_value_wei: Optional[int] = None
    max_gas_limit: Optional[int] = None
    max_fee_per_gas_wei: Optional[int] = None
    max_priority_fee_per_gas_wei: Optional[int] = None
    allowed_to: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "max_value_wei": None if self.max_value_wei is None else str(self.max_value_wei),
            "max_gas_limit": None if self.max_gas_limit is None else str(self.max_gas_limit),
            "max_fee_per_gas_wei": None if self.max_fee_per_gas_wei is None else str(self.max_fee_per_gas_wei),
            "max_priority_fee_per_gas_wei": None
            if self.max_priority_fee_per_gas_wei is None
            else str(self.max_priority_fee_per_gas_wei),
            "allowed_to": list(self.allowed_to),
        }


def policy_config_from_env(name: Optional[str] = None) -> PolicyConfig:
    """
    Policy config for the tool surface.

    All rules are opt-in; defaults are permissive unless env vars are set.
    """
    return PolicyConfig(
        name=name or (os.getenv("POLICY_NAME") or "env").strip(),
        max_value_wei=_env_int("POLICY_MAX_VALUE_WEI"),
        max_gas_limit=_env_int("POLICY_MAX_GAS_LIMIT"),
        max_fee_per_gas_wei=_env_int("POLICY_MAX_FEE_PER_GAS_WEI"),
        max_priority_fee_per_gas_wei=_env_int("POLICY_MAX_PRIORITY_FEE_PER_GAS_WEI"),
        allowed_to=_parse_csv_list(os.getenv("POLICY_ALLOWED_TO")),
    )


def _exceeds(limit: Optional[int], current: Optional[int]) -> bool:
    if limit is None or current is None:
        return False
    return int(current) > int(limit)


def enforce_policy(
    policy: PolicyConfig,
    *,
    to: str,
    value_wei: Optional[int] = None,
    gas_limit: Optional[int] = None,
    max_fee_per_gas_wei: Optional[int] = None,
    max_priority_fee_per_gas_wei: Optional[int] = None,
) -> None:
    """
    Check a transaction against every rule in `policy`.

    All rules are evaluated so the raised POLICY_VIOLATION lists each failure.
    """
    violations: List[str] = []

    if policy.allowed_to:
        allowed = {a.strip().lower() for a in policy.allowed_to}
        if str(to).strip().lower() not in allowed:
            violations.append(f"to address '{to}' is not allowlisted by policy '{policy.name}'")

    if _exceeds(policy.max_value_wei, value_wei):
        violations.append(f"value exceeds max_value_wei ({policy.max_value_wei})")

    if _exceeds(policy.max_gas_limit, gas_limit):
        violations.append(f"gas limit exceeds max_gas_limit ({policy.max_gas_limit})")

    if _exceeds(policy.max_fee_per_gas_wei, max_fee_per_gas_wei):
        violations.append(f"max fee per gas exceeds max_fee_per_gas_wei ({policy.max_fee_per_gas_wei})")

    if _exceeds(policy.max_priority_fee_per_gas_wei, max_priority_fee_per_gas_wei):
        violations.append(
            f"max priority fee per gas exceeds max_priority_fee_per_gas_wei ({policy.max_priority_fee_per_gas_wei})"
        )

    if violations:
        raise AppError(
            POLICY_VIOLATION,
            "Transaction blocked by policy checks.",
            {"policy": policy.name, "violations": violations},
        )
