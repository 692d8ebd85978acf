"""
Persona - Core Identity and Lifecycle

The minimal immutable identity of a person and the finite lifecycle state
machine it moves through.

Lifecycle transitions:
    Active       -> Deactivated            (deactivate)
    Deactivated  -> Active                 (reactivate)
    Active|Deactivated -> Deceased         (record death, terminal)
    Active|Deactivated -> MergedInto       (merge, terminal)

Terminal states reject every further mutation. The guards themselves are
enforced by the command handlers; this module only describes the states.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional, Union


@dataclass(frozen=True, slots=True)
class CoreIdentity:
    """Immutable identity record. Changed only by full replacement."""
    legal_name_ref: str
    created_at: datetime
    updated_at: datetime
    birth_date: Optional[date] = None
    death_date: Optional[date] = None

    def with_name(self, legal_name_ref: str, at: datetime) -> "CoreIdentity":
        return replace(self, legal_name_ref=legal_name_ref, updated_at=at)

    def with_death_date(self, death_date: date, at: datetime) -> "CoreIdentity":
        return replace(self, death_date=death_date, updated_at=at)

    def touched(self, at: datetime) -> "CoreIdentity":
        return replace(self, updated_at=at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "legal_name_ref": self.legal_name_ref,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "birth_date": self.birth_date.isoformat() if self.birth_date else None,
            "death_date": self.death_date.isoformat() if self.death_date else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CoreIdentity":
        return cls(
            legal_name_ref=data["legal_name_ref"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            birth_date=date.fromisoformat(data["birth_date"]) if data.get("birth_date") else None,
            death_date=date.fromisoformat(data["death_date"]) if data.get("death_date") else None,
        )


# =============================================================================
# LIFECYCLE
# =============================================================================


class LifecycleStatus(str, Enum):
    ACTIVE = "active"
    DEACTIVATED = "deactivated"
    DECEASED = "deceased"
    MERGED_INTO = "merged_into"


@dataclass(frozen=True, slots=True)
class Active:
    status = LifecycleStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value}


@dataclass(frozen=True, slots=True)
class Deactivated:
    reason: str
    since: datetime

    status = LifecycleStatus.DEACTIVATED

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "reason": self.reason, "since": self.since.isoformat()}


@dataclass(frozen=True, slots=True)
class Deceased:
    death_date: date

    status = LifecycleStatus.DECEASED

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "death_date": self.death_date.isoformat()}


@dataclass(frozen=True, slots=True)
class MergedInto:
    target_id: str
    merged_at: datetime

    status = LifecycleStatus.MERGED_INTO

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "target_id": self.target_id,
            "merged_at": self.merged_at.isoformat(),
        }


Lifecycle = Union[Active, Deactivated, Deceased, MergedInto]

TERMINAL_STATUSES = frozenset({LifecycleStatus.DECEASED, LifecycleStatus.MERGED_INTO})


def is_terminal(lifecycle: Lifecycle) -> bool:
    return lifecycle.status in TERMINAL_STATUSES


def accepts_mutation(lifecycle: Lifecycle) -> bool:
    """Attribute and name changes are allowed while Active or Deactivated."""
    return not is_terminal(lifecycle)


def lifecycle_from_dict(data: Dict[str, Any]) -> Lifecycle:
    status = LifecycleStatus(data["status"])
    if status is LifecycleStatus.ACTIVE:
        return Active()
    if status is LifecycleStatus.DEACTIVATED:
        return Deactivated(reason=data["reason"], since=datetime.fromisoformat(data["since"]))
    if status is LifecycleStatus.DECEASED:
        return Deceased(death_date=date.fromisoformat(data["death_date"]))
    return MergedInto(target_id=data["target_id"], merged_at=datetime.fromisoformat(data["merged_at"]))
