from __future__ import annotations
import re
import enum
import logging
import calendar
import datetime
import dill
import os
import time
import json
import jsonschema
import threading
import zoneinfo
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass, field, replace
from hashlib import md5
from typing import Any

from prometheus_client import Histogram


logger = logging.getLogger(__name__)

type SubjectID = str
type AttributeValue = None | str | bool | int | float
type Attributes = dict[str, AttributeValue]
type DictConfig = dict[str, Any]

UTC = datetime.timezone.utc

# Sentinels for "no lower bound" and "no upper bound" on activation schedules.
MIN_INSTANT = datetime.datetime.min.replace(tzinfo=UTC)
MAX_INSTANT = datetime.datetime.max.replace(tzinfo=UTC)


def _stable_hash(s: str) -> int:
    """
    Hashes the given string to a non-negative 64 bit integer.

    md5 is slow for a hash table but fine here, and its output never changes.
    Rollout buckets and variation assignments of every user and tenant depend
    on it, so the same input must hash identically across processes, python
    versions and platforms.
    """
    return int.from_bytes(
        md5(s.encode("utf-8")).digest()[:8],
        byteorder="big",  # Being explicit to survive default changes.
        signed=False,  # Being explicit to survive default changes.
    )


def _rollout_bucket(subject_id: SubjectID, flag_key: str) -> int:
    """
    Bucket in [0, 100) of the subject for the given flag. The flag key salts
    the hash so rollouts of different flags are independent.
    """
    return _stable_hash(f"{subject_id}:{flag_key}") % 100


def _to_utc(t: datetime.datetime) -> datetime.datetime:
    """
    Naive datetimes are taken to already be in UTC.
    """
    if t.tzinfo is None:
        return t.replace(tzinfo=UTC)
    return t.astimezone(UTC)


def _instant_from_iso(s: str) -> datetime.datetime:
    """
    Parse the given ISO 8601 time string into an aware UTC datetime.
    """
    t = datetime.datetime.fromisoformat(s)
    if t.tzinfo is None:
        raise ValueError("Timezone missing")
    return t.astimezone(UTC)


# Evaluation modes


class EvaluationMode(enum.Enum):
    OFF = "off"
    ON = "on"
    SCHEDULED = "scheduled"
    TIME_WINDOW = "time_window"
    USER_ROLLOUT_PERCENTAGE = "user_rollout_percentage"
    USER_TARGETED = "user_targeted"
    TENANT_ROLLOUT_PERCENTAGE = "tenant_rollout_percentage"
    TENANT_TARGETED = "tenant_targeted"
    TARGETING_RULES = "targeting_rules"


class EvaluationModeSet:
    """
    The set of evaluation strategies active on a flag. OFF is mutually
    exclusive with every other mode and the set is never empty; removing the
    last mode falls back to OFF.
    """

    __slots__ = ("_modes",)

    def __init__(self, modes: Iterable[EvaluationMode] = ()):
        self._modes: set[EvaluationMode] = {EvaluationMode.OFF}
        for mode in modes:
            self.add_mode(mode)

    def add_mode(self, mode: EvaluationMode):
        if mode is EvaluationMode.OFF:
            self._modes.clear()
            self._modes.add(EvaluationMode.OFF)
            return
        self._modes.discard(EvaluationMode.OFF)
        self._modes.add(mode)

    def remove_mode(self, mode: EvaluationMode):
        self._modes.discard(mode)
        if not self._modes:
            self._modes.add(EvaluationMode.OFF)

    def contains_modes(self, modes: Iterable[EvaluationMode], require_all: bool = False) -> bool:
        if require_all:
            return all(m in self._modes for m in modes)
        return any(m in self._modes for m in modes)

    @property
    def modes(self) -> frozenset[EvaluationMode]:
        return frozenset(self._modes)

    def copy(self) -> EvaluationModeSet:
        c = EvaluationModeSet()
        c._modes = set(self._modes)
        return c

    def __contains__(self, mode: object) -> bool:
        return mode in self._modes

    def __iter__(self):
        return iter(self._modes)

    def __len__(self) -> int:
        return len(self._modes)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EvaluationModeSet):
            return NotImplemented
        return self._modes == other._modes

    def __repr__(self) -> str:
        return f"EvaluationModeSet({sorted(m.value for m in self._modes)})"


# Activation schedule


@dataclass(frozen=True, slots=True)
class ActivationSchedule:
    """
    An enable/disable range in UTC. The enable boundary is inclusive and the
    disable boundary is exclusive. (MIN_INSTANT, MAX_INSTANT) means the flag
    is unscheduled.
    """

    enable_on: datetime.datetime = MIN_INSTANT
    disable_on: datetime.datetime = MAX_INSTANT

    def __post_init__(self):
        enable_on = _to_utc(self.enable_on)
        disable_on = _to_utc(self.disable_on)
        if disable_on <= enable_on:
            raise ValueError("scheduled disable date must be after the scheduled enable date")
        object.__setattr__(self, "enable_on", enable_on)
        object.__setattr__(self, "disable_on", disable_on)

    @staticmethod
    def unscheduled() -> ActivationSchedule:
        return ActivationSchedule()

    @staticmethod
    def create(
        enable_on: datetime.datetime | None,
        disable_on: datetime.datetime | None = None,
        now: datetime.datetime | None = None,
    ) -> ActivationSchedule:
        """
        Create a new schedule in a valid state. Unlike the constructor, which
        accepts any stored schedule, this requires the enable date to be set
        and to lie in the future relative to now.
        """
        if enable_on is None:
            raise ValueError("scheduled enable date is required")
        enable_on = _to_utc(enable_on)
        if enable_on in (MIN_INSTANT, MAX_INSTANT):
            raise ValueError("scheduled enable date must be a concrete date")
        now = datetime.datetime.now(UTC) if now is None else _to_utc(now)
        if enable_on <= now:
            raise ValueError("scheduled enable date must be in the future")
        return ActivationSchedule(enable_on, MAX_INSTANT if disable_on is None else disable_on)

    def has_schedule(self) -> bool:
        return self.enable_on > MIN_INSTANT or self.disable_on < MAX_INSTANT

    def is_active_at(self, instant: datetime.datetime) -> tuple[bool, str]:
        if not self.has_schedule():
            return False, "No active schedule set"
        instant = _to_utc(instant)
        if instant < self.enable_on:
            return False, "Scheduled enable date not reached"
        if instant >= self.disable_on:
            return False, "Scheduled disable date passed"
        return True, "Scheduled enable date reached"


# Operational time window

_ALL_DAYS = frozenset(calendar.Day)
_MAX_TIME_OF_DAY = datetime.timedelta(hours=23, minutes=59, seconds=59)
_time_of_day_re = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*$")

# Windows zone identifiers commonly stored by Windows hosted clients, mapped
# to their IANA equivalents.
_windows_time_zones = {
    "GMT Standard Time": "Europe/London",
    "Greenwich Standard Time": "Atlantic/Reykjavik",
    "W. Europe Standard Time": "Europe/Berlin",
    "Romance Standard Time": "Europe/Paris",
    "Central Europe Standard Time": "Europe/Budapest",
    "Central European Standard Time": "Europe/Warsaw",
    "FLE Standard Time": "Europe/Helsinki",
    "GTB Standard Time": "Europe/Bucharest",
    "Russian Standard Time": "Europe/Moscow",
    "South Africa Standard Time": "Africa/Johannesburg",
    "Arabian Standard Time": "Asia/Dubai",
    "India Standard Time": "Asia/Kolkata",
    "China Standard Time": "Asia/Shanghai",
    "Singapore Standard Time": "Asia/Singapore",
    "Tokyo Standard Time": "Asia/Tokyo",
    "Korea Standard Time": "Asia/Seoul",
    "AUS Eastern Standard Time": "Australia/Sydney",
    "New Zealand Standard Time": "Pacific/Auckland",
    "Atlantic Standard Time": "America/Halifax",
    "Eastern Standard Time": "America/New_York",
    "Central Standard Time": "America/Chicago",
    "Mountain Standard Time": "America/Denver",
    "US Mountain Standard Time": "America/Phoenix",
    "Pacific Standard Time": "America/Los_Angeles",
    "Alaskan Standard Time": "America/Anchorage",
    "Hawaiian Standard Time": "Pacific/Honolulu",
    "E. South America Standard Time": "America/Sao_Paulo",
}


def _resolve_time_zone(name: str) -> datetime.tzinfo:
    """
    Resolve an IANA or Windows zone identifier. Raises ValueError if the zone
    is unknown.
    """
    key = _windows_time_zones.get(name, name)
    if key.upper() in {"UTC", "ETC/UTC"}:
        return UTC
    try:
        return zoneinfo.ZoneInfo(key)
    except (zoneinfo.ZoneInfoNotFoundError, ValueError, OSError) as e:
        raise ValueError(f"invalid timezone identifier: {name}") from e


def _time_of_day(v: datetime.timedelta | datetime.time | str) -> datetime.timedelta:
    match v:
        case datetime.timedelta():
            return v
        case datetime.time():
            return datetime.timedelta(hours=v.hour, minutes=v.minute, seconds=v.second, microseconds=v.microsecond)
        case str():
            m = _time_of_day_re.match(v)
            if not m:
                raise ValueError(f"invalid time of day {v!r}")
            hours, minutes, seconds = int(m[1]), int(m[2]), int(m[3] or 0)
            if minutes > 59 or seconds > 59:
                raise ValueError(f"invalid time of day {v!r}")
            return datetime.timedelta(hours=hours, minutes=minutes, seconds=seconds)
        case _:
            raise TypeError(f"time of day must be a timedelta, time or string, not {type(v).__name__}")


def _weekday(v: calendar.Day | int | str) -> calendar.Day:
    if isinstance(v, str):
        try:
            return calendar.Day[v.strip().upper()]
        except KeyError:
            raise ValueError(f"invalid day of week {v!r}") from None
    return calendar.Day(v)


@dataclass(frozen=True, slots=True)
class OperationalWindow:
    """
    A daily time-of-day window in a time zone, restricted to a set of weekdays.
    A window whose start and end are both midnight is the "no window
    configured" sentinel. A start later than the end is an overnight window.
    """

    start: datetime.timedelta = datetime.timedelta(0)
    end: datetime.timedelta = datetime.timedelta(0)
    time_zone: str = "UTC"
    days: frozenset[calendar.Day] = _ALL_DAYS

    def __post_init__(self):
        start = _time_of_day(self.start)
        end = _time_of_day(self.end)
        for name, t in (("start", start), ("end", end)):
            if t < datetime.timedelta(0) or t > _MAX_TIME_OF_DAY:
                raise ValueError(f"{name} time must be between 00:00:00 and 23:59:59")
        days = frozenset(_weekday(d) for d in self.days) or _ALL_DAYS
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)
        object.__setattr__(self, "time_zone", self.time_zone or "UTC")
        object.__setattr__(self, "days", days)

    @staticmethod
    def always_open() -> OperationalWindow:
        return OperationalWindow(datetime.timedelta(0), _MAX_TIME_OF_DAY)

    @staticmethod
    def create(
        start: datetime.timedelta | datetime.time | str,
        end: datetime.timedelta | datetime.time | str,
        time_zone: str | None = "UTC",
        days: Iterable[calendar.Day | int | str] | None = None,
    ) -> OperationalWindow:
        """
        Create a new window in a valid state. The time zone must resolve at
        creation time; stored windows whose zone later disappears still load
        and simply evaluate as inactive.
        """
        time_zone = (time_zone or "").strip() or "UTC"
        _resolve_time_zone(time_zone)
        return OperationalWindow(start, end, time_zone, frozenset(days or ()))

    def has_window(self) -> bool:
        return not (self.start == datetime.timedelta(0) and self.end == datetime.timedelta(0))

    def is_active_at(self, instant: datetime.datetime, time_zone: str | None = None) -> tuple[bool, str]:
        effective_zone = time_zone or self.time_zone
        try:
            tz = _resolve_time_zone(effective_zone)
        except ValueError:
            return False, f"Invalid timezone: {effective_zone}"

        # Both the weekday and the time of day are taken after conversion since
        # crossing midnight can shift the local day relative to UTC.
        local = _to_utc(instant).astimezone(tz)
        if calendar.Day(local.weekday()) not in self.days:
            return False, "Outside allowed days"

        # Whole seconds, so the 23:59:59 upper bound covers the full last second.
        t = datetime.timedelta(hours=local.hour, minutes=local.minute, seconds=local.second)
        if self.start <= self.end:
            inside = self.start <= t <= self.end
        else:
            inside = t >= self.start or t <= self.end
        if not inside:
            return False, "Outside time window"
        return True, "Within time window"


# Access control


class AccessResult(enum.Enum):
    ALLOWED = "allowed"
    DENIED = "denied"


def _normalize_subjects(subjects: Iterable[str | None]) -> tuple[str, ...]:
    """
    Trim, drop blanks and case-insensitively dedupe, keeping the first
    spelling seen.
    """
    seen = set()
    normalized = []
    for s in subjects:
        if s is None or not s.strip():
            continue
        s = s.strip()
        folded = s.casefold()
        if folded in seen:
            continue
        seen.add(folded)
        normalized.append(s)
    return tuple(normalized)


def _require_subject(subject_id: str | None) -> str:
    if subject_id is None or not subject_id.strip():
        raise ValueError("subject ID cannot be empty")
    return subject_id.strip()


@dataclass(frozen=True, slots=True)
class AccessControl:
    """
    Explicit allow/block lists plus a percentage rollout for one kind of
    subject (users or tenants). Instances are immutable; the with_* methods
    return new instances.
    """

    allowed: tuple[str, ...] = ()
    blocked: tuple[str, ...] = ()
    rollout_percentage: int = 0
    _allowed_index: frozenset[str] = field(init=False, repr=False, compare=False)
    _blocked_index: frozenset[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if isinstance(self.rollout_percentage, bool) or not isinstance(self.rollout_percentage, int):
            raise TypeError(f"rollout percentage must be an int, not {type(self.rollout_percentage).__name__}")
        if not 0 <= self.rollout_percentage <= 100:
            raise ValueError("rollout percentage must be between 0 and 100")
        allowed = _normalize_subjects(self.allowed)
        blocked = _normalize_subjects(self.blocked)
        allowed_index = frozenset(s.casefold() for s in allowed)
        blocked_index = frozenset(s.casefold() for s in blocked)
        conflicts = allowed_index & blocked_index
        if conflicts:
            raise ValueError(f"same subject cannot be in both allowed and blocked lists: {', '.join(sorted(conflicts))}")
        object.__setattr__(self, "allowed", allowed)
        object.__setattr__(self, "blocked", blocked)
        object.__setattr__(self, "_allowed_index", allowed_index)
        object.__setattr__(self, "_blocked_index", blocked_index)

    @staticmethod
    def unrestricted() -> AccessControl:
        return AccessControl(rollout_percentage=100)

    def has_access_restrictions(self) -> bool:
        return bool(self.allowed or self.blocked) or 0 < self.rollout_percentage < 100

    def is_explicitly_managed(self, subject_id: str | None) -> bool:
        if subject_id is None or not subject_id.strip():
            return False
        folded = subject_id.strip().casefold()
        return folded in self._allowed_index or folded in self._blocked_index

    def evaluate_access(self, subject_id: str | None, flag_key: str, kind: str = "user") -> tuple[AccessResult, str]:
        """
        Decide whether the subject may see the flag. Blocking takes precedence
        over allowing, and both take precedence over the rollout percentage.
        kind names the subject in the returned reason ("user" or "tenant").
        """
        label = kind.capitalize()
        if subject_id is None or not subject_id.strip():
            return AccessResult.DENIED, f"{label} ID is required"

        subject_id = subject_id.strip()
        folded = subject_id.casefold()
        if folded in self._blocked_index:
            return AccessResult.DENIED, f"{label} explicitly blocked"
        if folded in self._allowed_index:
            return AccessResult.ALLOWED, f"{label} explicitly allowed"

        if self.rollout_percentage <= 0:
            return AccessResult.DENIED, f"Access restricted to all {kind}s"
        if self.rollout_percentage >= 100:
            return AccessResult.ALLOWED, f"Access unrestricted to all {kind}s"

        bucket = _rollout_bucket(subject_id, flag_key)
        if bucket < self.rollout_percentage:
            return AccessResult.ALLOWED, f"{label} in rollout: {bucket}% < {self.rollout_percentage}%"
        return AccessResult.DENIED, f"{label} not in rollout: {bucket}% >= {self.rollout_percentage}%"

    def with_allowed_subject(self, subject_id: str) -> AccessControl:
        subject_id = _require_subject(subject_id)
        folded = subject_id.casefold()
        if folded in self._allowed_index:
            return self
        return AccessControl(
            allowed=(*self.allowed, subject_id),
            blocked=tuple(s for s in self.blocked if s.casefold() != folded),
            rollout_percentage=self.rollout_percentage,
        )

    def with_blocked_subject(self, subject_id: str) -> AccessControl:
        subject_id = _require_subject(subject_id)
        folded = subject_id.casefold()
        if folded in self._blocked_index:
            return self
        return AccessControl(
            allowed=tuple(s for s in self.allowed if s.casefold() != folded),
            blocked=(*self.blocked, subject_id),
            rollout_percentage=self.rollout_percentage,
        )

    def without_subject(self, subject_id: str) -> AccessControl:
        folded = _require_subject(subject_id).casefold()
        if not self.is_explicitly_managed(folded):
            return self
        return AccessControl(
            allowed=tuple(s for s in self.allowed if s.casefold() != folded),
            blocked=tuple(s for s in self.blocked if s.casefold() != folded),
            rollout_percentage=self.rollout_percentage,
        )

    def with_rollout_percentage(self, percentage: int) -> AccessControl:
        if percentage == self.rollout_percentage:
            return self
        return replace(self, rollout_percentage=percentage)


# Targeting rules


class TargetingOperator(enum.Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IN = "in"
    NOT_IN = "not_in"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


# Accept "greater_than", "GreaterThan" and "GREATER_THAN" alike.
_operators_by_name = {op.value.replace("_", ""): op for op in TargetingOperator}


def _format_value(v: str | float) -> str:
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    return str(v)


def _as_number(v: Any) -> float | None:
    match v:
        case bool():
            return None
        case int() | float():
            n = float(v)
        case str():
            try:
                n = float(v)
            except ValueError:
                return None
        case _:
            return None
    # NaN never compares equal to anything, including itself.
    return None if n != n else n


def _as_text(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


@dataclass(frozen=True, slots=True)
class TargetingRule(ABC):
    """
    Attribute based predicate mapping a context to a variation. Use
    TargetingRule.create to get a rule of the right kind for the values.

    The operator is kept as a plain string when it isn't a known
    TargetingOperator. Such rules never match.
    """

    attribute: str
    operator: TargetingOperator | str
    values: tuple
    variation: str

    @staticmethod
    def create(
        attribute: str,
        operator: TargetingOperator | str,
        values: Iterable[str | int | float],
        variation: str,
    ) -> TargetingRule:
        """
        Build a NumericTargetingRule if every value is a number, otherwise a
        StringTargetingRule.
        """
        if not attribute or not attribute.strip():
            raise ValueError("targeting rule attribute is required")
        if not variation or not variation.strip():
            raise ValueError("targeting rule variation is required")
        values = [_as_text(v) for v in values]
        if not values:
            raise ValueError("targeting rule requires at least one value")
        if isinstance(operator, str):
            name = operator.strip().lower().replace("_", "")
            if name in _operators_by_name:
                operator = _operators_by_name[name]
            else:
                logger.warning("Unsupported targeting operator %r on attribute %r; rule will never match", operator, attribute)

        numbers = [_as_number(v) for v in values]
        if all(n is not None for n in numbers):
            return NumericTargetingRule(attribute.strip(), operator, tuple(numbers), variation.strip())
        return StringTargetingRule(attribute.strip(), operator, tuple(values), variation.strip())

    @abstractmethod
    def matches(self, attributes: Mapping[str, AttributeValue]) -> bool: ...

    def __str__(self) -> str:
        op = self.operator.name if isinstance(self.operator, TargetingOperator) else self.operator
        values = ",".join(_format_value(v) for v in self.values)
        return f"{self.attribute} {op} {values}"


@dataclass(frozen=True, slots=True)
class StringTargetingRule(TargetingRule):
    values: tuple[str, ...]

    def matches(self, attributes: Mapping[str, AttributeValue]) -> bool:
        value = attributes.get(self.attribute)
        if value is None:
            return False
        return self.evaluate_for(_as_text(value))

    def evaluate_for(self, value: str) -> bool:
        v = value.casefold()
        candidates = [c.casefold() for c in self.values]
        match self.operator:
            case TargetingOperator.EQUALS | TargetingOperator.IN:
                return v in candidates
            case TargetingOperator.NOT_EQUALS | TargetingOperator.NOT_IN:
                return v not in candidates
            case TargetingOperator.CONTAINS:
                return any(c in v for c in candidates)
            case TargetingOperator.NOT_CONTAINS:
                return not any(c in v for c in candidates)
            # The value has to be beyond every listed value, not just one.
            case TargetingOperator.GREATER_THAN:
                return all(v > c for c in candidates)
            case TargetingOperator.LESS_THAN:
                return all(v < c for c in candidates)
            case _:
                return False


@dataclass(frozen=True, slots=True)
class NumericTargetingRule(TargetingRule):
    values: tuple[float, ...]

    def matches(self, attributes: Mapping[str, AttributeValue]) -> bool:
        value = _as_number(attributes.get(self.attribute))
        if value is None:
            return False
        return self.evaluate_for(value)

    def evaluate_for(self, value: float) -> bool:
        match self.operator:
            case TargetingOperator.EQUALS | TargetingOperator.IN | TargetingOperator.CONTAINS:
                return value in self.values
            case TargetingOperator.NOT_EQUALS | TargetingOperator.NOT_IN | TargetingOperator.NOT_CONTAINS:
                return value not in self.values
            case TargetingOperator.GREATER_THAN:
                return all(value > c for c in self.values)
            case TargetingOperator.LESS_THAN:
                return all(value < c for c in self.values)
            case _:
                return False


def match_targeting_rules(rules: Iterable[TargetingRule], attributes: Mapping[str, AttributeValue]) -> TargetingRule | None:
    """
    Return the first rule, in declaration order, that matches the attributes.
    """
    for rule in rules:
        if rule.matches(attributes):
            return rule
    return None


# Variations


def _on_off_values() -> dict[str, Any]:
    return {"on": True, "off": False}


@dataclass(frozen=True, slots=True)
class Variations:
    values: Mapping[str, Any] = field(default_factory=_on_off_values)
    default_variation: str = "off"

    def __post_init__(self):
        object.__setattr__(self, "values", dict(self.values))

    @staticmethod
    def on_off() -> Variations:
        return Variations()

    def is_on_off(self) -> bool:
        """
        Whether this is a plain boolean flag, in which case no variation
        selection takes place.
        """
        return (
            self.default_variation == "off"
            and self.values.keys() == {"on", "off"}
            and self.values["on"] is True
            and self.values["off"] is False
        )

    def select_variation_for(self, flag_key: str, subject_id: SubjectID) -> str | None:
        """
        Deterministically pick one of the non-default variations for the
        subject. Returns None for plain boolean flags and when there is no
        variation other than the default.
        """
        if self.is_on_off():
            return None
        candidates = sorted(name for name in self.values if name != self.default_variation)
        if not candidates:
            return None
        return candidates[_stable_hash(f"{flag_key}:{subject_id}") % len(candidates)]


# Flag definitions


class Scope(enum.Enum):
    GLOBAL = "global"
    APPLICATION = "application"


@dataclass(frozen=True, slots=True)
class EvalConfiguration:
    """
    The evaluation relevant half of a flag. Management operations on
    FlagDefinition keep it internally consistent.
    """

    modes: EvaluationModeSet = field(default_factory=EvaluationModeSet)
    schedule: ActivationSchedule = field(default_factory=ActivationSchedule.unscheduled)
    operational_window: OperationalWindow = field(default_factory=OperationalWindow)
    user_access_control: AccessControl = field(default_factory=AccessControl.unrestricted)
    tenant_access_control: AccessControl = field(default_factory=AccessControl.unrestricted)
    targeting_rules: tuple[TargetingRule, ...] = ()
    variations: Variations = field(default_factory=Variations.on_off)

    def __post_init__(self):
        # Mode sets are mutable; each configuration owns its own.
        object.__setattr__(self, "modes", self.modes.copy())
        object.__setattr__(self, "targeting_rules", tuple(self.targeting_rules))


@dataclass(frozen=True, slots=True)
class FlagDefinition:
    key: str
    scope: Scope = Scope.GLOBAL
    name: str = ""
    description: str = ""
    tags: Mapping[str, str] = field(default_factory=dict)
    is_permanent: bool = False
    expiration_date: datetime.datetime | None = None
    application_name: str | None = None
    config: EvalConfiguration = field(default_factory=EvalConfiguration)

    def __post_init__(self):
        if not self.key or not self.key.strip():
            raise ValueError("flag key is required")
        if self.scope is Scope.GLOBAL and self.application_name:
            raise ValueError("global flags cannot belong to an application")
        object.__setattr__(self, "key", self.key.strip())
        object.__setattr__(self, "name", self.name or self.key.strip())
        object.__setattr__(self, "tags", dict(self.tags))
        if self.expiration_date is not None:
            object.__setattr__(self, "expiration_date", _to_utc(self.expiration_date))

    def is_expired(self, at: datetime.datetime) -> bool:
        if self.is_permanent or self.expiration_date is None:
            return False
        return _to_utc(at) > self.expiration_date

    # Management operations. Each returns a new definition whose configuration
    # is consistent with the change.

    def _with_config(self, **changes: Any) -> FlagDefinition:
        return replace(self, config=replace(self.config, **changes))

    def toggled(self, mode: EvaluationMode) -> FlagDefinition:
        """
        Switch the flag fully on or off. Schedule, window, targeting rules and
        access lists are reset; variations are kept.
        """
        if mode not in (EvaluationMode.ON, EvaluationMode.OFF):
            raise ValueError("flags can only be toggled on or off")
        percentage = 100 if mode is EvaluationMode.ON else 0
        config = EvalConfiguration(
            modes=EvaluationModeSet([mode]),
            user_access_control=AccessControl(rollout_percentage=percentage),
            tenant_access_control=AccessControl(rollout_percentage=percentage),
            variations=self.config.variations,
        )
        return replace(self, config=config)

    def with_schedule(
        self,
        enable_on: datetime.datetime | None,
        disable_on: datetime.datetime | None = None,
        now: datetime.datetime | None = None,
    ) -> FlagDefinition:
        schedule = ActivationSchedule.create(enable_on, disable_on, now)
        modes = self.config.modes.copy()
        modes.remove_mode(EvaluationMode.ON)
        modes.add_mode(EvaluationMode.SCHEDULED)
        return self._with_config(modes=modes, schedule=schedule)

    def without_schedule(self) -> FlagDefinition:
        modes = self.config.modes.copy()
        modes.remove_mode(EvaluationMode.SCHEDULED)
        return self._with_config(modes=modes, schedule=ActivationSchedule.unscheduled())

    def with_operational_window(
        self,
        start: datetime.timedelta | datetime.time | str,
        end: datetime.timedelta | datetime.time | str,
        time_zone: str | None = "UTC",
        days: Iterable[calendar.Day | int | str] | None = None,
    ) -> FlagDefinition:
        window = OperationalWindow.create(start, end, time_zone, days)
        modes = self.config.modes.copy()
        modes.remove_mode(EvaluationMode.ON)
        modes.add_mode(EvaluationMode.TIME_WINDOW)
        return self._with_config(modes=modes, operational_window=window)

    def without_operational_window(self) -> FlagDefinition:
        modes = self.config.modes.copy()
        modes.remove_mode(EvaluationMode.TIME_WINDOW)
        return self._with_config(modes=modes, operational_window=OperationalWindow())

    def with_targeting_rules(self, rules: Iterable[TargetingRule]) -> FlagDefinition:
        rules = tuple(rules)
        modes = self.config.modes.copy()
        modes.remove_mode(EvaluationMode.ON)
        if rules:
            modes.add_mode(EvaluationMode.TARGETING_RULES)
        else:
            modes.remove_mode(EvaluationMode.TARGETING_RULES)
        return self._with_config(modes=modes, targeting_rules=rules)

    def _with_access(
        self,
        current: AccessControl,
        rollout_mode: EvaluationMode,
        targeted_mode: EvaluationMode,
        allowed: Iterable[str],
        blocked: Iterable[str],
        rollout_percentage: int | None,
    ) -> tuple[EvaluationModeSet, AccessControl]:
        access = AccessControl(
            allowed=tuple(allowed),
            blocked=tuple(blocked),
            rollout_percentage=current.rollout_percentage if rollout_percentage is None else rollout_percentage,
        )
        modes = self.config.modes.copy()
        modes.remove_mode(EvaluationMode.ON)
        modes.remove_mode(EvaluationMode.OFF)
        if access.rollout_percentage == 0:
            modes.remove_mode(rollout_mode)
        else:
            modes.add_mode(rollout_mode)
        if access.allowed or access.blocked:
            modes.add_mode(targeted_mode)
        else:
            modes.remove_mode(targeted_mode)
        return modes, access

    def with_user_access(
        self,
        allowed: Iterable[str] = (),
        blocked: Iterable[str] = (),
        rollout_percentage: int | None = None,
    ) -> FlagDefinition:
        modes, access = self._with_access(
            self.config.user_access_control,
            EvaluationMode.USER_ROLLOUT_PERCENTAGE,
            EvaluationMode.USER_TARGETED,
            allowed,
            blocked,
            rollout_percentage,
        )
        return self._with_config(modes=modes, user_access_control=access)

    def with_tenant_access(
        self,
        allowed: Iterable[str] = (),
        blocked: Iterable[str] = (),
        rollout_percentage: int | None = None,
    ) -> FlagDefinition:
        modes, access = self._with_access(
            self.config.tenant_access_control,
            EvaluationMode.TENANT_ROLLOUT_PERCENTAGE,
            EvaluationMode.TENANT_TARGETED,
            allowed,
            blocked,
            rollout_percentage,
        )
        return self._with_config(modes=modes, tenant_access_control=access)

    def with_variations(self, variations: Variations) -> FlagDefinition:
        return self._with_config(variations=variations)


# Evaluation


@dataclass(frozen=True, slots=True)
class EvaluationContext:
    user_id: str | None = None
    tenant_id: str | None = None
    attributes: Attributes = field(default_factory=dict)
    # Overrides the time zone of the flag's operational window.
    time_zone: str | None = None
    now: datetime.datetime = field(default_factory=lambda: datetime.datetime.now(UTC))

    def __post_init__(self):
        object.__setattr__(self, "now", _to_utc(self.now))


@dataclass(frozen=True, slots=True)
class EvaluationResult:
    is_enabled: bool
    reason: str
    variation: str | None = None


_user_modes = (EvaluationMode.USER_TARGETED, EvaluationMode.USER_ROLLOUT_PERCENTAGE)
_tenant_modes = (EvaluationMode.TENANT_TARGETED, EvaluationMode.TENANT_ROLLOUT_PERCENTAGE)


def _disabled(flag: FlagDefinition, reason: str) -> EvaluationResult:
    return EvaluationResult(False, reason, flag.config.variations.default_variation)


def _enabled(flag: FlagDefinition, context: EvaluationContext, reason: str) -> EvaluationResult:
    variations = flag.config.variations
    subject_id = context.tenant_id or context.user_id or "anonymous"
    variation = variations.select_variation_for(flag.key, subject_id)
    if variation is None:
        variation = "on" if variations.is_on_off() else variations.default_variation
    return EvaluationResult(True, reason, variation)


def evaluate_flag(flag: FlagDefinition, context: EvaluationContext) -> EvaluationResult:
    """
    Decide whether the flag is on for the context, and which variation
    applies.

    Modes are checked in a fixed priority order: off, on, expiration,
    schedule, time window, targeting rules, user access and finally tenant
    access. A disabled outcome from any gate is final. evaluate_flag performs
    no I/O and never raises for bad context data; those cases resolve to a
    disabled result with an explanatory reason.
    """
    config = flag.config
    modes = config.modes

    if EvaluationMode.OFF in modes:
        return _disabled(flag, "Flag is off")
    if EvaluationMode.ON in modes:
        return _enabled(flag, context, "Flag is on")
    if flag.is_expired(context.now):
        return _disabled(flag, "Flag expired")

    # Reasons of the gates passed so far.
    passed: list[str] = []

    if EvaluationMode.SCHEDULED in modes:
        active, reason = config.schedule.is_active_at(context.now)
        if not active:
            return _disabled(flag, reason)
        passed.append(reason)

    if EvaluationMode.TIME_WINDOW in modes and config.operational_window.has_window():
        active, reason = config.operational_window.is_active_at(context.now, context.time_zone)
        if not active:
            return _disabled(flag, reason)
        passed.append(reason)

    user_gate = modes.contains_modes(_user_modes)
    tenant_gate = modes.contains_modes(_tenant_modes)

    if EvaluationMode.TARGETING_RULES in modes:
        rule = match_targeting_rules(config.targeting_rules, context.attributes)
        if rule is not None:
            return EvaluationResult(True, f"Targeting rule matched: {rule}", rule.variation)
        if not (user_gate or tenant_gate):
            return _disabled(flag, "No targeting rules matched")

    if user_gate:
        access, reason = config.user_access_control.evaluate_access(context.user_id, flag.key, "user")
        if access is AccessResult.DENIED:
            return _disabled(flag, reason)
        passed.append(reason)

    if tenant_gate:
        access, reason = config.tenant_access_control.evaluate_access(context.tenant_id, flag.key, "tenant")
        if access is AccessResult.DENIED:
            return _disabled(flag, reason)
        passed.append(reason)

    if len(passed) == 1:
        return _enabled(flag, context, passed[0])
    return _enabled(flag, context, "All configured conditions met for feature flag activation")


# Loading definitions


with open(os.path.join(os.path.dirname(__file__), "flag_schema.json")) as f:
    _flag_schema = json.load(f)


def _access_from_dict(d: DictConfig | None) -> AccessControl:
    if d is None:
        return AccessControl.unrestricted()
    return AccessControl(
        allowed=tuple(d.get("allowed", ())),
        blocked=tuple(d.get("blocked", ())),
        rollout_percentage=d.get("rollout_percentage", 0),
    )


def _flag_from_dict(key: str, f: DictConfig) -> FlagDefinition:
    modes = EvaluationModeSet(EvaluationMode(m) for m in f.get("modes", ()))

    schedule = ActivationSchedule.unscheduled()
    if "schedule" in f:
        s = f["schedule"]
        schedule = ActivationSchedule(
            _instant_from_iso(s["enable_on"]) if "enable_on" in s else MIN_INSTANT,
            _instant_from_iso(s["disable_on"]) if "disable_on" in s else MAX_INSTANT,
        )

    window = OperationalWindow()
    if "window" in f:
        w = f["window"]
        window = OperationalWindow(w["start"], w["end"], w.get("time_zone", "UTC"), frozenset(_weekday(d) for d in w.get("days", ())))

    rules = tuple(TargetingRule.create(r["attribute"], r["operator"], r["values"], r["variation"]) for r in f.get("targeting_rules", ()))

    variations = Variations.on_off()
    if "variations" in f:
        v = f["variations"]
        default = v.get("default", "off")
        if default not in v["values"]:
            raise ValueError(f"flag {key}: default variation must be one of the variations")
        variations = Variations(v["values"], default)

    # Rules pointing at undeclared variations would resolve to values callers
    # can't look up.
    unknown = {r.variation for r in rules} - set(variations.values)
    if unknown:
        raise ValueError(f"flag {key}: unknown variations {sorted(unknown)} in targeting rules")

    return FlagDefinition(
        key=key,
        scope=Scope(f.get("scope", "global")),
        name=f.get("name", ""),
        description=f.get("description", ""),
        tags=f.get("tags", {}),
        is_permanent=f.get("permanent", False),
        expiration_date=_instant_from_iso(f["expiration_date"]) if "expiration_date" in f else None,
        application_name=f.get("application_name"),
        config=EvalConfiguration(
            modes=modes,
            schedule=schedule,
            operational_window=window,
            user_access_control=_access_from_dict(f.get("user_access")),
            tenant_access_control=_access_from_dict(f.get("tenant_access")),
            targeting_rules=rules,
            variations=variations,
        ),
    )


class FlagSet:
    """
    Immutable snapshot of flag definitions keyed by (key, scope).
    """

    __slots__ = ("flags",)
    flags: dict[tuple[str, Scope], FlagDefinition]

    def __init__(self, flags: Iterable[FlagDefinition] = ()):
        self.flags = {}
        for flag in flags:
            ident = (flag.key, flag.scope)
            if ident in self.flags:
                raise ValueError(f"duplicate flag {flag.key} in {flag.scope.value} scope")
            self.flags[ident] = flag

    def get(self, key: str, scope: Scope = Scope.GLOBAL) -> FlagDefinition | None:
        return self.flags.get((key, scope))

    def __len__(self) -> int:
        return len(self.flags)

    @staticmethod
    def from_bytes(b: bytes) -> FlagSet:
        obj = dill.loads(b)
        assert isinstance(obj, FlagSet)
        return obj

    def to_bytes(self) -> bytes:
        return dill.dumps(self)

    @staticmethod
    def from_dict(*configs: DictConfig) -> FlagSet:
        """
        Validate and load one or more definition documents into a single flag
        set. The same key may appear once per scope across all documents.
        """
        flags = []
        for c in configs:
            jsonschema.validate(c, _flag_schema)
            flags.extend(_flag_from_dict(key, f) for key, f in c.get("flags", {}).items())
        return FlagSet(flags)


# Evaluator service


class EvaluationRecord:
    """
    A flag evaluation as handed to exporters.
    """

    __slots__ = (
        "flag",
        "scope",
        "user_id",
        "tenant_id",
        "is_enabled",
        "variation",
        "reason",
        "timestamp",
    )
    flag: str
    scope: Scope
    user_id: str | None
    tenant_id: str | None
    is_enabled: bool
    variation: str | None
    reason: str
    timestamp: float


class Exporter:
    """
    Receives batches of evaluation records from an Evaluator, e.g. to write them
    to an audit table or a message queue. export runs on the evaluator's
    background thread.
    """

    @abstractmethod
    def export(self, entries: list[EvaluationRecord]) -> None: ...


_prom_eval_duration = Histogram(
    "flagvane_evaluation_seconds",
    "Flag evaluation duration in seconds",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1],
    labelnames=["flag", "scope", "enabled"],
)


class Evaluator:
    """
    Holds the currently loaded flag set and evaluates flags against it. It
    also provides a way to export flag evaluations to a storage system. The
    evaluator is thread-safe.
    """

    def __init__(
        self,
        exporter: Exporter | None = None,
        export_block_seconds: int = 60 * 5,
    ):
        self._default_attributes_mu = threading.RLock()
        self._default_attributes: Attributes = {}
        self._config_mu = threading.RLock()
        self._config: FlagSet | None = None

        if exporter:
            self._exporter = exporter
            self._export_block_seconds = export_block_seconds
            self._evaluations_mu = threading.Lock()
            self._evaluations: dict[int, dict[tuple, EvaluationRecord]] = defaultdict(dict)
            self._stop_wait = threading.Event()
            self._start_exporter()

    def _start_exporter(self):
        def _worker():
            while not self._stop_wait.is_set():
                self._stop_wait.wait(self._export_block_seconds)
                self.flush_evaluations(before=time.time())

        threading.Thread(target=_worker, daemon=True).start()

    def flush_evaluations(self, before: float):
        """
        Export all recorded evaluations in blocks that ended before the given
        unix time. A no-op without an exporter.
        """
        if not hasattr(self, "_exporter"):
            return
        cur_block_id = self._export_block_id(before)
        blocks = []
        with self._evaluations_mu:
            for block_id, block in list(self._evaluations.items()):
                if block_id < cur_block_id:
                    blocks.append(block)
                    del self._evaluations[block_id]
        if not blocks:
            return
        entries = [e for d in blocks for e in d.values()]
        try:
            self._exporter.export(entries)
        except Exception:
            logger.exception("Error exporting evaluations")

    def stop_exporter(self):
        if hasattr(self, "_exporter"):
            self._stop_wait.set()

    def _get_default_attributes(self):
        with self._default_attributes_mu:
            attrs = self._default_attributes
        return attrs

    @staticmethod
    def _validate_attributes_type(attributes: Attributes):
        if not isinstance(attributes, dict):
            raise TypeError(f"attributes must be a dict, not {type(attributes).__name__}")
        for k, v in attributes.items():
            if not isinstance(k, str):
                raise TypeError(f"attribute key must be a string, not {type(k).__name__}")
            if not isinstance(v, (str, int, float, bool, type(None))):
                raise TypeError(f"attribute value must be a string, int, float, bool, None, not {type(v).__name__}")

    @classmethod
    def _validate_context(cls, context: EvaluationContext):
        if not isinstance(context, EvaluationContext):
            raise TypeError(f"context must be an EvaluationContext, not {type(context).__name__}")
        for name in ("user_id", "tenant_id", "time_zone"):
            v = getattr(context, name)
            if v is not None and not isinstance(v, str):
                raise TypeError(f"{name} must be a string, not {type(v).__name__}")
        cls._validate_attributes_type(context.attributes)

    def set_default_attributes(self, attributes: Attributes = {}):
        """
        Attributes merged into every evaluation context, for values that hold
        process wide such as environment or region. Context attributes win on
        conflict. set_default_attributes is thread-safe.
        """
        self._validate_attributes_type(attributes)
        attributes = deepcopy(attributes)
        with self._default_attributes_mu:
            self._default_attributes = attributes

    def load_config(self, config: FlagSet):
        """
        Load the flag set into the evaluator. load_config is thread-safe.
        """
        with self._config_mu:
            self._config = config

    def _export_block_id(self, t: float) -> int:
        return (int(t) // self._export_block_seconds) * self._export_block_seconds

    def _get_config(self) -> FlagSet:
        with self._config_mu:
            config = self._config
        if config is None:
            raise RuntimeError("config not loaded")
        return config

    def detailed_evaluate_all(
        self,
        keys: Iterable[str],
        context: EvaluationContext,
        scope: Scope = Scope.GLOBAL,
    ) -> dict[str, EvaluationResult]:
        """
        Evaluate all flags for the given context and return EvaluationResults.
        Unknown flags evaluate disabled. detailed_evaluate_all is thread-safe.
        """
        self._validate_context(context)
        default_attributes = self._get_default_attributes()
        if default_attributes:
            context = replace(context, attributes={**default_attributes, **context.attributes})
        config = self._get_config()

        results: dict[str, EvaluationResult] = {}
        for key in set(keys):
            flag = config.get(key, scope)
            if flag is None:
                logger.debug("Flag %s not found in %s scope", key, scope.value)
                results[key] = EvaluationResult(False, "Flag not found")
                continue
            start = time.perf_counter()
            r = evaluate_flag(flag, context)
            dur = time.perf_counter() - start
            _prom_eval_duration.labels(flag=key, scope=scope.value, enabled=str(r.is_enabled)).observe(dur)
            logger.debug("Flag %s evaluated: enabled=%s variation=%s reason=%s", key, r.is_enabled, r.variation, r.reason)
            results[key] = r

        if hasattr(self, "_exporter"):
            block_id = self._export_block_id(context.now.timestamp())
            upd = {}
            for key, r in results.items():
                rec = EvaluationRecord()
                rec.flag = key
                rec.scope = scope
                rec.user_id = context.user_id
                rec.tenant_id = context.tenant_id
                rec.is_enabled = r.is_enabled
                rec.variation = r.variation
                rec.reason = r.reason
                rec.timestamp = block_id
                upd[(block_id, context.user_id, context.tenant_id, scope, key)] = rec
            with self._evaluations_mu:
                self._evaluations[block_id].update(upd)

        return results

    def evaluate(self, key: str, context: EvaluationContext, scope: Scope = Scope.GLOBAL) -> EvaluationResult:
        """
        Evaluate a single flag. evaluate is thread-safe.

        key: The key of the flag.
        context: The subject, attributes and time to evaluate the flag for.
        scope: The scope the flag is defined in.
        """
        return self.detailed_evaluate_all([key], context, scope)[key]

    def is_enabled(self, key: str, context: EvaluationContext, scope: Scope = Scope.GLOBAL) -> bool:
        return self.evaluate(key, context, scope).is_enabled

    def evaluate_all(self, keys: Iterable[str], context: EvaluationContext, scope: Scope = Scope.GLOBAL) -> dict[str, bool]:
        """
        Evaluate all flags for the given context. evaluate_all is thread-safe.
        """
        return {k: r.is_enabled for k, r in self.detailed_evaluate_all(keys, context, scope).items()}

    def get_variation(self, key: str, context: EvaluationContext, default: Any = None, scope: Scope = Scope.GLOBAL) -> Any:
        """
        Return the value bound to the variation selected for the context, or
        default when the flag is disabled or the variation carries no value.
        """
        r = self.evaluate(key, context, scope)
        if not r.is_enabled:
            return default
        flag = self._get_config().get(key, scope)
        if flag is None:
            return default
        return flag.config.variations.values.get(r.variation, default)
