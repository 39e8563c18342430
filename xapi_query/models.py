"""
xAPI statement object model.

Each node is a frozen dataclass built from the raw wire document with
``from_dict`` and turned back into it with ``to_dict``. Attribute names are
snake_case; the wire keys stay exactly as the xAPI schema spells them
(``objectType``, ``moreInfo``, ``contextActivities``...). ``to_dict`` only
emits what is present, and timestamps keep the string the LRS sent.
"""

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Tuple, Union

from .config import configuration
from .errors import InvalidDurationError, StatementParseError
from .localization import LocalizedMixin

logger = logging.getLogger(__name__)

ISO_DURATION = re.compile(
    r"^P(?:(\d+(?:\.\d+)?)Y)?(?:(\d+(?:\.\d+)?)M)?(?:(\d+(?:\.\d+)?)W)?(?:(\d+(?:\.\d+)?)D)?"
    r"(?:T(?:(\d+(?:\.\d+)?)H)?(?:(\d+(?:\.\d+)?)M)?(?:(\d+(?:\.\d+)?)S)?)?$"
)

# Calendar units: 365.25-day years, months of 1/12 year
SECONDS_PER_YEAR = 525960 * 60
SECONDS_PER_MONTH = 43800 * 60
SECONDS_PER_WEEK = 7 * 86400
SECONDS_PER_DAY = 86400

SUBSTATEMENT_FORBIDDEN = ("id", "authority", "stored")


# ─── Scalar helpers ──────────────────────────────────────────────────────────

def parse_instant(value: Any) -> datetime:
    """Parse an ISO 8601 timestamp into an aware UTC datetime.

    Raises ValueError when the value is not a valid timestamp.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"Not an ISO 8601 timestamp: {value!r}")
        ts_str = value.strip()
        ts_str = re.sub(r"[Zz]$", "+00:00", ts_str)
        ts_str = re.sub(r"([+-]\d{2})(\d{2})$", r"\1:\2", ts_str)
        ts_str = re.sub(r"(\+\d{2}:\d{2}):\d{2}$", r"\1", ts_str)
        # fromisoformat wants exactly 6 fractional digits on older interpreters
        ts_str = re.sub(r"\.(\d+)", lambda m: "." + m.group(1)[:6].ljust(6, "0"), ts_str, count=1)
        dt = datetime.fromisoformat(ts_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_instant(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def seconds_to_iso8601(seconds: Union[int, float]) -> str:
    if seconds < 0:
        raise InvalidDurationError(f"Negative duration: {seconds}")
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    out = "PT"
    if hours:
        out += f"{int(hours)}H"
    if minutes:
        out += f"{int(minutes)}M"
    if secs or out == "PT":
        out += f"{secs:g}S"
    return out


def format_duration(value: Any) -> Optional[str]:
    """Accept an ISO 8601 duration string or a number of seconds."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return seconds_to_iso8601(value)
    raise InvalidDurationError(f"Unsupported duration type: {type(value).__name__}")


def duration_to_seconds(duration: Optional[str]) -> Optional[float]:
    if not duration:
        return None
    m = ISO_DURATION.match(duration.strip())
    if not m or duration.strip() in ("P", "PT"):
        return None
    years, months, weeks, days, hours, minutes, seconds = (float(x) if x else 0.0 for x in m.groups())
    return (
        years * SECONDS_PER_YEAR
        + months * SECONDS_PER_MONTH
        + weeks * SECONDS_PER_WEEK
        + days * SECONDS_PER_DAY
        + hours * 3600
        + minutes * 60
        + seconds
    )


def _mapping(raw: Any, what: str) -> Mapping:
    if not isinstance(raw, Mapping):
        raise StatementParseError(f"{what} must be an object, got {type(raw).__name__}")
    return raw


def _instant(raw: Mapping, key: str) -> Tuple[Optional[datetime], Optional[str]]:
    value = raw.get(key)
    if value is None:
        return None, None
    try:
        return parse_instant(value), value if isinstance(value, str) else None
    except (TypeError, ValueError) as e:
        raise StatementParseError(f"Invalid {key} {value!r}: {e}") from e


def _put(node: Dict, key: str, value: Any) -> None:
    if value is not None:
        node[key] = value


def _components(raw: Any) -> Optional[Tuple["InteractionComponent", ...]]:
    if raw is None:
        return None
    return tuple(InteractionComponent.from_dict(item) for item in raw)


def _component_list(components: Optional[Tuple["InteractionComponent", ...]]) -> Optional[List[Dict]]:
    if not components:
        return None
    return [c.to_dict() for c in components]


# ─── Actors ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AgentAccount:
    home_page: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Mapping) -> "AgentAccount":
        raw = _mapping(raw, "account")
        return cls(home_page=raw.get("homePage"), name=raw.get("name"))

    def to_dict(self) -> Dict:
        node: Dict = {}
        _put(node, "name", self.name)
        _put(node, "homePage", self.home_page)
        return node


@dataclass(frozen=True)
class Agent:
    """An individual, identified by one inverse functional identifier (IFI)."""

    object_type: ClassVar[str] = "Agent"
    QUERY_ATTRIBUTES: ClassVar[Tuple[str, ...]] = ("object_type", "ifi")

    name: Optional[str] = None
    mbox: Optional[str] = None
    mbox_sha1sum: Optional[str] = None
    openid: Optional[str] = None
    account: Optional[AgentAccount] = None

    @classmethod
    def _fields_from(cls, raw: Mapping) -> Dict:
        return dict(
            name=raw.get("name"),
            mbox=raw.get("mbox"),
            mbox_sha1sum=raw.get("mbox_sha1sum"),
            openid=raw.get("openid"),
            account=AgentAccount.from_dict(raw["account"]) if raw.get("account") is not None else None,
        )

    @classmethod
    def from_dict(cls, raw: Mapping) -> "Agent":
        return cls(**cls._fields_from(_mapping(raw, "agent")))

    @property
    def ifi(self) -> Optional[str]:
        """The identifying value: mbox, mbox_sha1sum, openid or "homePage|name"."""
        if self.mbox:
            return self.mbox
        if self.mbox_sha1sum:
            return self.mbox_sha1sum
        if self.openid:
            return self.openid
        if self.account is not None:
            return f"{self.account.home_page or ''}|{self.account.name or ''}"
        return None

    def to_dict(self) -> Dict:
        node: Dict = {"objectType": self.object_type}
        _put(node, "name", self.name)
        _put(node, "mbox", self.mbox)
        _put(node, "mbox_sha1sum", self.mbox_sha1sum)
        _put(node, "openid", self.openid)
        if self.account is not None:
            node["account"] = self.account.to_dict()
        return node


@dataclass(frozen=True)
class Group(Agent):
    """A set of Agents; anonymous when it carries no IFI of its own."""

    object_type: ClassVar[str] = "Group"

    members: Optional[Tuple[Agent, ...]] = None

    @classmethod
    def from_dict(cls, raw: Mapping) -> "Group":
        raw = _mapping(raw, "group")
        members = raw.get("member")
        return cls(
            members=tuple(Agent.from_dict(m) for m in members) if members is not None else None,
            **cls._fields_from(raw),
        )

    def to_dict(self) -> Dict:
        node = super().to_dict()
        if self.members:
            node["member"] = [m.to_dict() for m in self.members]
        return node


def parse_actor(raw: Mapping) -> Agent:
    raw = _mapping(raw, "actor")
    if "member" in raw or raw.get("objectType") == "Group":
        return Group.from_dict(raw)
    return Agent.from_dict(raw)


# ─── Verb ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Verb(LocalizedMixin):
    QUERY_ATTRIBUTES: ClassVar[Tuple[str, ...]] = ("name",)

    id: Optional[str] = None
    display: Optional[Dict[str, str]] = None

    @classmethod
    def from_dict(cls, raw: Mapping) -> "Verb":
        raw = _mapping(raw, "verb")
        return cls(id=raw.get("id"), display=raw.get("display"))

    @property
    def name(self) -> Optional[str]:
        """Display string in the configured default locale, else the first one."""
        if not self.display:
            return None
        locale = configuration().default_locale
        if locale and locale in self.display:
            return self.display[locale]
        return next(iter(self.display.values()))

    def localize_display(self, locale: Optional[str] = None) -> str:
        return self.localize("display", locale)

    def to_dict(self) -> Dict:
        node: Dict = {}
        _put(node, "id", self.id)
        _put(node, "display", self.display)
        return node


# ─── Activities ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class InteractionComponent(LocalizedMixin):
    id: Optional[str] = None
    description: Optional[Dict[str, str]] = None

    @classmethod
    def from_dict(cls, raw: Mapping) -> "InteractionComponent":
        raw = _mapping(raw, "interaction component")
        return cls(id=raw.get("id"), description=raw.get("description"))

    def localize_description(self, locale: Optional[str] = None) -> str:
        return self.localize("description", locale)

    def to_dict(self) -> Dict:
        node: Dict = {}
        _put(node, "id", self.id)
        _put(node, "description", self.description)
        return node


# interactionType -> component arrays serialized for it
INTERACTION_COMPONENTS = {
    "choice": ("choices",),
    "sequencing": ("choices",),
    "likert": ("scale",),
    "matching": ("source", "target"),
    "performance": ("steps",),
}


@dataclass(frozen=True)
class ActivityDefinition(LocalizedMixin):
    """Metadata of an Activity.

    Only the component arrays that belong to ``interaction_type`` are
    serialized: ``choices`` for choice/sequencing, ``scale`` for likert,
    ``source`` + ``target`` for matching and ``steps`` for performance.
    """

    name: Optional[Dict[str, str]] = None
    description: Optional[Dict[str, str]] = None
    type: Optional[str] = None
    more_info: Optional[str] = None
    interaction_type: Optional[str] = None
    correct_responses_pattern: Optional[Tuple[str, ...]] = None
    choices: Optional[Tuple[InteractionComponent, ...]] = None
    scale: Optional[Tuple[InteractionComponent, ...]] = None
    source: Optional[Tuple[InteractionComponent, ...]] = None
    target: Optional[Tuple[InteractionComponent, ...]] = None
    steps: Optional[Tuple[InteractionComponent, ...]] = None
    extensions: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, raw: Mapping) -> "ActivityDefinition":
        raw = _mapping(raw, "activity definition")
        pattern = raw.get("correctResponsesPattern")
        return cls(
            name=raw.get("name"),
            description=raw.get("description"),
            type=raw.get("type"),
            more_info=raw.get("moreInfo"),
            interaction_type=raw.get("interactionType"),
            correct_responses_pattern=tuple(pattern) if pattern is not None else None,
            choices=_components(raw.get("choices")),
            scale=_components(raw.get("scale")),
            source=_components(raw.get("source")),
            target=_components(raw.get("target")),
            steps=_components(raw.get("steps")),
            extensions=raw.get("extensions"),
        )

    def localize_name(self, locale: Optional[str] = None) -> str:
        return self.localize("name", locale)

    def localize_description(self, locale: Optional[str] = None) -> str:
        return self.localize("description", locale)

    def to_dict(self) -> Dict:
        node: Dict = {}
        _put(node, "name", self.name)
        _put(node, "description", self.description)
        _put(node, "type", self.type)
        _put(node, "moreInfo", self.more_info)
        _put(node, "extensions", self.extensions)
        if self.interaction_type:
            node["interactionType"] = self.interaction_type
            for attr in INTERACTION_COMPONENTS.get(self.interaction_type, ()):
                _put(node, attr, _component_list(getattr(self, attr)))
        if self.correct_responses_pattern:
            node["correctResponsesPattern"] = list(self.correct_responses_pattern)
        return node


@dataclass(frozen=True)
class Activity:
    object_type: ClassVar[str] = "Activity"
    QUERY_ATTRIBUTES: ClassVar[Tuple[str, ...]] = ("object_type",)

    id: Optional[str] = None
    definition: Optional[ActivityDefinition] = None

    @classmethod
    def from_dict(cls, raw: Mapping) -> "Activity":
        raw = _mapping(raw, "activity")
        definition = raw.get("definition")
        return cls(
            id=raw.get("id"),
            definition=ActivityDefinition.from_dict(definition) if definition is not None else None,
        )

    def to_dict(self) -> Dict:
        node: Dict = {"objectType": self.object_type}
        _put(node, "id", self.id)
        if self.definition is not None:
            node["definition"] = self.definition.to_dict()
        return node


@dataclass(frozen=True)
class StatementRef:
    object_type: ClassVar[str] = "StatementRef"
    QUERY_ATTRIBUTES: ClassVar[Tuple[str, ...]] = ("object_type",)

    id: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Mapping) -> "StatementRef":
        return cls(id=_mapping(raw, "statement reference").get("id"))

    def to_dict(self) -> Dict:
        node: Dict = {}
        _put(node, "id", self.id)
        node["objectType"] = self.object_type
        return node


# ─── Result / Context / Attachment ───────────────────────────────────────────

@dataclass(frozen=True)
class Score:
    scaled: Optional[float] = None
    raw: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None

    @classmethod
    def from_dict(cls, raw: Mapping) -> "Score":
        raw = _mapping(raw, "score")
        return cls(scaled=raw.get("scaled"), raw=raw.get("raw"), min=raw.get("min"), max=raw.get("max"))

    def to_dict(self) -> Dict:
        node: Dict = {}
        _put(node, "scaled", self.scaled)
        _put(node, "raw", self.raw)
        _put(node, "min", self.min)
        _put(node, "max", self.max)
        return node


@dataclass(frozen=True)
class Result:
    QUERY_ATTRIBUTES: ClassVar[Tuple[str, ...]] = ("duration_seconds",)

    score: Optional[Score] = None
    success: Optional[bool] = None
    completion: Optional[bool] = None
    response: Optional[str] = None
    duration: Optional[str] = None
    extensions: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, raw: Mapping) -> "Result":
        raw = _mapping(raw, "result")
        score = raw.get("score")
        return cls(
            score=Score.from_dict(score) if score is not None else None,
            success=raw.get("success"),
            completion=raw.get("completion"),
            response=raw.get("response"),
            duration=format_duration(raw.get("duration")),
            extensions=raw.get("extensions"),
        )

    @property
    def duration_seconds(self) -> Optional[float]:
        return duration_to_seconds(format_duration(self.duration))

    def to_dict(self) -> Dict:
        node: Dict = {}
        if self.score is not None:
            node["score"] = self.score.to_dict()
        _put(node, "success", self.success)
        _put(node, "completion", self.completion)
        _put(node, "response", self.response)
        _put(node, "duration", format_duration(self.duration))
        _put(node, "extensions", self.extensions)
        return node


def _activities(raw: Any) -> Optional[Tuple[Activity, ...]]:
    if raw is None:
        return None
    if isinstance(raw, Mapping):
        raw = [raw]
    return tuple(Activity.from_dict(item) for item in raw)


@dataclass(frozen=True)
class ContextActivities:
    parent: Optional[Tuple[Activity, ...]] = None
    grouping: Optional[Tuple[Activity, ...]] = None
    category: Optional[Tuple[Activity, ...]] = None
    other: Optional[Tuple[Activity, ...]] = None

    @classmethod
    def from_dict(cls, raw: Mapping) -> "ContextActivities":
        raw = _mapping(raw, "contextActivities")
        return cls(
            parent=_activities(raw.get("parent")),
            grouping=_activities(raw.get("grouping")),
            category=_activities(raw.get("category")),
            other=_activities(raw.get("other")),
        )

    def to_dict(self) -> Dict:
        node: Dict = {}
        for key in ("parent", "grouping", "category", "other"):
            activities = getattr(self, key)
            if activities:
                node[key] = [a.to_dict() for a in activities]
        return node


@dataclass(frozen=True)
class Context:
    registration: Optional[str] = None
    instructor: Optional[Agent] = None
    team: Optional[Group] = None
    context_activities: Optional[ContextActivities] = None
    revision: Optional[str] = None
    platform: Optional[str] = None
    language: Optional[str] = None
    statement: Optional[StatementRef] = None
    extensions: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, raw: Mapping) -> "Context":
        raw = _mapping(raw, "context")
        activities = raw.get("contextActivities")
        return cls(
            registration=raw.get("registration"),
            instructor=parse_actor(raw["instructor"]) if raw.get("instructor") is not None else None,
            team=Group.from_dict(raw["team"]) if raw.get("team") is not None else None,
            context_activities=ContextActivities.from_dict(activities) if activities is not None else None,
            revision=raw.get("revision"),
            platform=raw.get("platform"),
            language=raw.get("language"),
            statement=StatementRef.from_dict(raw["statement"]) if raw.get("statement") is not None else None,
            extensions=raw.get("extensions"),
        )

    def to_dict(self) -> Dict:
        node: Dict = {}
        _put(node, "registration", self.registration)
        if self.instructor is not None:
            node["instructor"] = self.instructor.to_dict()
        if self.team is not None:
            node["team"] = self.team.to_dict()
        if self.context_activities is not None:
            node["contextActivities"] = self.context_activities.to_dict()
        _put(node, "revision", self.revision)
        _put(node, "platform", self.platform)
        _put(node, "language", self.language)
        if self.statement is not None:
            node["statement"] = self.statement.to_dict()
        _put(node, "extensions", self.extensions)
        return node


@dataclass(frozen=True)
class Attachment(LocalizedMixin):
    usage_type: Optional[str] = None
    display: Optional[Dict[str, str]] = None
    description: Optional[Dict[str, str]] = None
    content_type: Optional[str] = None
    length: Optional[int] = None
    sha2: Optional[str] = None
    file_url: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Mapping) -> "Attachment":
        raw = _mapping(raw, "attachment")
        return cls(
            usage_type=raw.get("usageType"),
            display=raw.get("display"),
            description=raw.get("description"),
            content_type=raw.get("contentType"),
            length=raw.get("length"),
            sha2=raw.get("sha2"),
            file_url=raw.get("fileUrl"),
        )

    def localize_display(self, locale: Optional[str] = None) -> str:
        return self.localize("display", locale)

    def localize_description(self, locale: Optional[str] = None) -> str:
        return self.localize("description", locale)

    def to_dict(self) -> Dict:
        node: Dict = {}
        _put(node, "usageType", self.usage_type)
        _put(node, "display", self.display)
        _put(node, "description", self.description)
        _put(node, "contentType", self.content_type)
        _put(node, "length", self.length)
        _put(node, "sha2", self.sha2)
        _put(node, "fileUrl", self.file_url)
        return node


# ─── Statements ──────────────────────────────────────────────────────────────

def parse_object(raw: Mapping) -> "StatementObject":
    """Pick the object variant from its ``objectType``; default is Activity."""
    raw = _mapping(raw, "object")
    object_type = raw.get("objectType")
    if object_type == "Agent":
        return Agent.from_dict(raw)
    if object_type == "Group":
        return Group.from_dict(raw)
    if object_type == "StatementRef":
        return StatementRef.from_dict(raw)
    if object_type == "SubStatement":
        return SubStatement.from_dict(raw)
    return Activity.from_dict(raw)


@dataclass(frozen=True)
class StatementBase:
    """Fields shared by Statement and SubStatement."""

    actor: Optional[Agent] = None
    verb: Optional[Verb] = None
    object: Optional["StatementObject"] = None
    result: Optional[Result] = None
    context: Optional[Context] = None
    timestamp: Optional[datetime] = None
    raw_timestamp: Optional[str] = None
    attachments: Optional[Tuple[Attachment, ...]] = None

    @classmethod
    def _fields_from(cls, raw: Mapping) -> Dict:
        timestamp, raw_timestamp = _instant(raw, "timestamp")
        attachments = raw.get("attachments")
        return dict(
            actor=parse_actor(raw["actor"]) if raw.get("actor") is not None else None,
            verb=Verb.from_dict(raw["verb"]) if raw.get("verb") is not None else None,
            object=parse_object(raw["object"]) if raw.get("object") is not None else None,
            result=Result.from_dict(raw["result"]) if raw.get("result") is not None else None,
            context=Context.from_dict(raw["context"]) if raw.get("context") is not None else None,
            timestamp=timestamp,
            raw_timestamp=raw_timestamp,
            attachments=tuple(Attachment.from_dict(a) for a in attachments) if attachments is not None else None,
        )

    def to_dict(self) -> Dict:
        node: Dict = {}
        if self.actor is not None:
            node["actor"] = self.actor.to_dict()
        if self.verb is not None:
            node["verb"] = self.verb.to_dict()
        if self.object is not None:
            node["object"] = self.object.to_dict()
        if self.result is not None:
            node["result"] = self.result.to_dict()
        if self.context is not None:
            node["context"] = self.context.to_dict()
        if self.timestamp is not None or self.raw_timestamp:
            node["timestamp"] = self.raw_timestamp or format_instant(self.timestamp)
        if self.attachments:
            node["attachments"] = [a.to_dict() for a in self.attachments]
        return node


@dataclass(frozen=True)
class SubStatement(StatementBase):
    """A statement nested as the object of another; has no id, authority or stored."""

    object_type: ClassVar[str] = "SubStatement"
    QUERY_ATTRIBUTES: ClassVar[Tuple[str, ...]] = ("object_type",)

    @classmethod
    def from_dict(cls, raw: Mapping) -> "SubStatement":
        raw = _mapping(raw, "SubStatement")
        dropped = [key for key in SUBSTATEMENT_FORBIDDEN if key in raw]
        if dropped:
            logger.warning(f"SubStatement cannot carry {dropped}; ignoring them")
        return cls(**cls._fields_from(raw))

    def to_dict(self) -> Dict:
        node = super().to_dict()
        node["objectType"] = self.object_type
        return node


StatementObject = Union[Activity, Agent, Group, StatementRef, SubStatement]


@dataclass(frozen=True)
class Statement(StatementBase):
    id: Optional[str] = None
    stored: Optional[datetime] = None
    raw_stored: Optional[str] = None
    authority: Optional[Agent] = None
    version: Optional[str] = None
    voided: Optional[bool] = None
    raw: Optional[Mapping] = field(default=None, compare=False, repr=False)

    @classmethod
    def from_dict(cls, raw: Mapping) -> "Statement":
        raw = _mapping(raw, "statement")
        stored, raw_stored = _instant(raw, "stored")
        return cls(
            id=raw.get("id"),
            stored=stored,
            raw_stored=raw_stored,
            authority=parse_actor(raw["authority"]) if raw.get("authority") is not None else None,
            version=raw.get("version"),
            voided=raw.get("voided"),
            raw=raw,
            **cls._fields_from(raw),
        )

    def to_dict(self) -> Dict:
        node = super().to_dict()
        _put(node, "id", self.id)
        if self.stored is not None or self.raw_stored:
            node["stored"] = self.raw_stored or format_instant(self.stored)
        if self.authority is not None:
            node["authority"] = self.authority.to_dict()
        _put(node, "voided", self.voided)
        _put(node, "version", self.version)
        return node


def parse_statements(documents: Iterable[Mapping]) -> List[Statement]:
    return [Statement.from_dict(doc) for doc in documents]
