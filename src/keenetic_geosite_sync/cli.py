#!/usr/bin/env python3
"""keenetic-geosite-sync - Geosite Domain Lists for Keenetic DNS Routing

Keeps the router's FQDN object-groups (used as dns-proxy route targets) in sync
with community maintained domain lists such as v2fly/domain-list-community.
Each managed object-group carries a human readable description; the description
is slugified into a list name, the list is fetched and its includes expanded, and
the minimal set of CLI commands converging the router to that list is emitted.

Managed groups are found by name prefix. Large lists are split across several
groups (<name>, <name>-2, <name>-3, ...) so that no group exceeds the per-group
capacity, and new split groups inherit the dns-proxy route flags of the chunk
before them.

Environment variables:

    Configuration file:
        GEOSITE_SYNC_CONFIG    Path to a YAML config file
                               (default: /opt/etc/keenetic-geosite-sync/config.yaml)
                               Example config file:
                                 base_url: https://raw.githubusercontent.com/v2fly/domain-list-community/master/data/
                                 prefix: domain-list
                                 route_interface: Wireguard0
                                 max_entries_per_group: 300
                                 initial_domains: [google, youtube]
                                 dry_run: false

    Overrides (take precedence over the config file):
        GEOSITE_BASE_URL                Domain list source root
        GEOSITE_TIMEOUT_MS              Per-request timeout in milliseconds (default: 15000)
        GEOSITE_RETRIES                 Fetch attempts per list (default: 3)
        GEOSITE_PREFIX                  Managed object-group name prefix (default: domain-list)
        GEOSITE_DRY_RUN                 Log commands instead of applying them (default: true)
        GEOSITE_ROUTE_INTERFACE         Interface for dns-proxy routes (optional)
        GEOSITE_MAX_ENTRIES_PER_GROUP   Capacity of one object-group (default: 300)
        GEOSITE_INITIAL_DOMAINS         Comma-separated list names used when no
                                        managed group exists yet
        GEOSITE_DEADLINE_SECONDS        Overall deadline for resolving all lists (optional)

    Router access:
        ROUTER_URL             Keenetic RCI base URL (default: http://127.0.0.1:79)
        ROUTER_USERNAME        RCI username (optional)
        ROUTER_PASSWORD        RCI password (optional)
        RUNNING_CONFIG_PATH    Read running-config from this file instead of the
                               router (dry runs only)

    Runtime:
        SYNC_ACTION            "sync" or "drop" (remove every managed group and
                               its routes) (default: sync)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import logging
import os
import re
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple
from urllib.parse import quote

import requests
import yaml
from requests.auth import HTTPBasicAuth

# =============================================================================
# Configuration
# =============================================================================

CONFIG_PATH = os.getenv("GEOSITE_SYNC_CONFIG", "/opt/etc/keenetic-geosite-sync/config.yaml")
SYNC_ACTION = os.getenv("SYNC_ACTION", "sync").lower().strip()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DEFAULT_BASE_URL = "https://raw.githubusercontent.com/v2fly/domain-list-community/master/data/"
DEFAULT_TIMEOUT_MS = 15000
DEFAULT_RETRIES = 3
DEFAULT_PREFIX = "domain-list"
DEFAULT_MAX_ENTRIES_PER_GROUP = 300
DEFAULT_ROUTER_URL = "http://127.0.0.1:79"

USER_AGENT = "keenetic-geosite-sync/1.0"
MAX_RETRY_DELAY_MS = 3000
RETRY_STEP_MS = 500

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class GeositeSyncError(Exception):
    """Base class for errors raised by the sync engine."""


class ConfigurationError(GeositeSyncError):
    """Invalid options; raised before any network access."""


class FetchError(GeositeSyncError):
    """A domain list could not be fetched after all retries."""

    def __init__(self, locator: str, cause: Optional[BaseException]):
        self.locator = locator
        self.cause = cause
        super().__init__(f"failed to fetch {locator}: {cause}")


class IncludeCycleError(GeositeSyncError):
    """A list includes itself, directly or through other lists."""

    def __init__(self, path: Sequence[str]):
        self.path = list(path)
        super().__init__(f"include cycle: {' -> '.join(self.path)}")


class DeadlineExceeded(GeositeSyncError):
    """The overall run deadline passed while lists were still being resolved."""


# =============================================================================
# Enums
# =============================================================================


class RuleKind(Enum):
    """Rule types of a domain-list-community document."""

    DOMAIN = "domain"
    FULL = "full"
    KEYWORD = "keyword"
    REGEXP = "regexp"
    INCLUDE = "include"


class CommandKind(Enum):
    CREATE_GROUP = "create-group"
    SET_DESCRIPTION = "set-description"
    INCLUDE_DOMAIN = "include-domain"
    EXCLUDE_DOMAIN = "exclude-domain"
    CREATE_ROUTE = "create-route"
    DISABLE_ROUTE = "disable-route"
    REMOVE_ROUTE = "remove-route"
    REMOVE_GROUP = "remove-group"


class ListOutcome(Enum):
    """Terminal state of one logical list after a run."""

    SYNCED = "synced"
    SKIPPED = "skipped"
    ERRORED = "errored"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class DomainRule:
    """One parsed line of a domain list."""

    kind: RuleKind
    value: str


@dataclass
class ResolvedDomainSet:
    """Domains collected from a list and everything it includes."""

    domains: Set[str] = field(default_factory=set)
    skipped_keyword: int = 0
    skipped_regexp: int = 0
    include_count: int = 0
    total_rules: int = 0

    def merge(self, child: ResolvedDomainSet) -> None:
        self.domains.update(child.domains)
        self.skipped_keyword += child.skipped_keyword
        self.skipped_regexp += child.skipped_regexp
        self.include_count += child.include_count
        self.total_rules += child.total_rules


@dataclass(frozen=True)
class ObjectGroup:
    """An `object-group fqdn` block as found in the running-config."""

    name: str
    descriptions: Tuple[str, ...] = ()
    members: Tuple[str, ...] = ()

    @property
    def description(self) -> str:
        return self.descriptions[0] if self.descriptions else ""


@dataclass(frozen=True)
class RouteBinding:
    """A dns-proxy route from an object-group to an interface."""

    group: str
    interface: str
    enabled: bool = True


@dataclass(frozen=True)
class ParsedConfig:
    groups: Tuple[ObjectGroup, ...] = ()
    routes: Tuple[RouteBinding, ...] = ()


@dataclass(frozen=True)
class ParseWarning:
    """Non-fatal discovery problem; logged, never raised."""

    name: str
    message: str


@dataclass(frozen=True)
class ManagedGroup:
    """An object-group matched by the managed prefix."""

    name: str
    description: str
    base_name: str
    split_index: int = 0
    members: Tuple[str, ...] = ()


@dataclass
class LogicalList:
    """One or more groups holding the chunks of a single domain list."""

    base_name: str
    description: str
    slug: str
    groups: Dict[int, ManagedGroup] = field(default_factory=dict)
    routes: Dict[Tuple[str, str], RouteBinding] = field(default_factory=dict)
    seed: Optional[str] = None
    # split index -> name of a chunk group skipped for its description
    reserved: Dict[int, str] = field(default_factory=dict)

    def routes_for(self, group_name: str) -> List[RouteBinding]:
        return [r for (name, _), r in self.routes.items() if name == group_name]


@dataclass
class Discovery:
    lists: List[LogicalList] = field(default_factory=list)
    warnings: List[ParseWarning] = field(default_factory=list)
    group_count: int = 0
    disabled_routes: List[RouteBinding] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Command:
    """A single router CLI command produced by reconciliation."""

    kind: CommandKind
    group: str
    value: str = ""
    interface: str = ""

    def __str__(self) -> str:
        if self.kind is CommandKind.CREATE_GROUP:
            return f"object-group fqdn {self.group}"
        if self.kind is CommandKind.SET_DESCRIPTION:
            return f'object-group fqdn {self.group} description "{self.value}"'
        if self.kind is CommandKind.INCLUDE_DOMAIN:
            return f"object-group fqdn {self.group} include {self.value}"
        if self.kind is CommandKind.EXCLUDE_DOMAIN:
            return f"no object-group fqdn {self.group} include {self.value}"
        if self.kind is CommandKind.CREATE_ROUTE:
            return f"dns-proxy route object-group {self.group} {self.interface} auto"
        if self.kind is CommandKind.DISABLE_ROUTE:
            # Applies to the route line emitted right before it.
            return "dns-proxy route disable"
        if self.kind is CommandKind.REMOVE_ROUTE:
            return f"no dns-proxy route object-group {self.group} {self.interface}"
        return f"no object-group fqdn {self.group}"


@dataclass
class SyncReport:
    """Result of one reconciliation pass."""

    commands: List[Command] = field(default_factory=list)
    outcomes: Dict[str, ListOutcome] = field(default_factory=dict)
    domain_counts: Dict[str, int] = field(default_factory=dict)
    applied: bool = False

    @property
    def lines(self) -> List[str]:
        return [str(c) for c in self.commands]


TextFetcher = Callable[[str, int], str]


@dataclass(frozen=True)
class SyncConfig:
    """Validated run options."""

    base_url: str = DEFAULT_BASE_URL
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    retries: int = DEFAULT_RETRIES
    prefix: str = DEFAULT_PREFIX
    dry_run: bool = True
    route_interface: str = ""
    max_entries_per_group: int = DEFAULT_MAX_ENTRIES_PER_GROUP
    initial_domains: Tuple[str, ...] = ()
    deadline_seconds: Optional[float] = None
    router_url: str = DEFAULT_ROUTER_URL
    router_username: str = ""
    router_password: str = field(default="", repr=False)
    running_config_path: str = ""
    fetch_fn: Optional[TextFetcher] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        for key in ("timeout_ms", "retries", "max_entries_per_group"):
            value = getattr(self, key)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{key} must be a positive integer, got {value!r}")
        if not self.prefix:
            raise ConfigurationError("prefix must not be empty")
        if not self.base_url:
            raise ConfigurationError("base_url must not be empty")
        if self.deadline_seconds is not None and not self.deadline_seconds > 0:
            raise ConfigurationError(
                f"deadline_seconds must be positive, got {self.deadline_seconds!r}"
            )
        object.__setattr__(self, "base_url", normalize_base_url(self.base_url))
        object.__setattr__(self, "initial_domains", tuple(self.initial_domains))


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}") from None


def _parse_float(value: Any, key: str) -> float:
    if isinstance(value, bool):
        raise ConfigurationError(f"{key} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be a number, got {value!r}") from None


def _parse_list(value: Any, key: str) -> List[str]:
    """Accept a YAML list or a comma-separated string."""
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        raise ConfigurationError(f"{key} must be a list or comma-separated string")
    return [item.strip() for item in items if item.strip()]


def normalize_base_url(url: str) -> str:
    """Ensure the list source root ends with a slash."""
    if not url:
        return "/"
    return url if url.endswith("/") else f"{url}/"


def chunk(items: Sequence[str], size: int) -> List[List[str]]:
    """Split items into consecutive chunks of at most `size` entries."""
    if isinstance(size, bool) or not isinstance(size, int) or size <= 0:
        raise ConfigurationError(f"chunk size must be a positive integer, got {size!r}")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def desired_group_names(base_name: str, chunk_count: int) -> List[str]:
    """Names of the groups holding a list split into `chunk_count` parts."""
    if chunk_count <= 1:
        return [base_name]
    return [base_name if i == 0 else f"{base_name}-{i + 1}" for i in range(chunk_count)]


# =============================================================================
# Config Loading
# =============================================================================

# camelCase spellings accepted alongside the snake_case keys
_CONFIG_ALIASES = {
    "baseUrl": "base_url",
    "timeoutMs": "timeout_ms",
    "dryRun": "dry_run",
    "routeInterface": "route_interface",
    "maxEntriesPerGroup": "max_entries_per_group",
    "initialDomains": "initial_domains",
    "deadlineSeconds": "deadline_seconds",
    "routerUrl": "router_url",
    "routerUsername": "router_username",
    "routerPassword": "router_password",
    "runningConfigPath": "running_config_path",
    "fetchFn": "fetch_fn",
}

_ENV_OVERRIDES = {
    "GEOSITE_BASE_URL": "base_url",
    "GEOSITE_TIMEOUT_MS": "timeout_ms",
    "GEOSITE_RETRIES": "retries",
    "GEOSITE_PREFIX": "prefix",
    "GEOSITE_DRY_RUN": "dry_run",
    "GEOSITE_ROUTE_INTERFACE": "route_interface",
    "GEOSITE_MAX_ENTRIES_PER_GROUP": "max_entries_per_group",
    "GEOSITE_INITIAL_DOMAINS": "initial_domains",
    "GEOSITE_DEADLINE_SECONDS": "deadline_seconds",
    "ROUTER_URL": "router_url",
    "ROUTER_USERNAME": "router_username",
    "ROUTER_PASSWORD": "router_password",
    "RUNNING_CONFIG_PATH": "running_config_path",
}

_CONFIG_FIELDS = {f.name for f in fields(SyncConfig)}
_STRING_FIELDS = (
    "base_url",
    "prefix",
    "route_interface",
    "router_url",
    "router_username",
    "router_password",
    "running_config_path",
)
_INT_FIELDS = ("timeout_ms", "retries", "max_entries_per_group")


def build_config(raw: Mapping[str, Any]) -> SyncConfig:
    """Coerce a raw mapping (YAML, env, or caller dict) into a SyncConfig.

    Raises:
        ConfigurationError: if any value is missing its expected shape.
    """
    values: Dict[str, Any] = {}
    for key, value in raw.items():
        name = _CONFIG_ALIASES.get(key, key)
        if name not in _CONFIG_FIELDS:
            logger.warning(f"Ignoring unknown config key '{key}'")
            continue
        values[name] = value

    kwargs: Dict[str, Any] = {}
    for name in _STRING_FIELDS:
        if values.get(name) is not None:
            kwargs[name] = str(values[name]).strip()
    for name in _INT_FIELDS:
        if values.get(name) is not None:
            kwargs[name] = _parse_int(values[name], name)
    if values.get("deadline_seconds") is not None:
        kwargs["deadline_seconds"] = _parse_float(values["deadline_seconds"], "deadline_seconds")
    if "dry_run" in values:
        kwargs["dry_run"] = _parse_bool(values["dry_run"], default=True)
    if values.get("initial_domains") is not None:
        kwargs["initial_domains"] = tuple(_parse_list(values["initial_domains"], "initial_domains"))
    if values.get("fetch_fn") is not None:
        if not callable(values["fetch_fn"]):
            raise ConfigurationError("fetch_fn must be callable")
        kwargs["fetch_fn"] = values["fetch_fn"]

    return SyncConfig(**kwargs)


def load_config(config_path: str = "", environ: Optional[Mapping[str, str]] = None) -> SyncConfig:
    """Load options from an optional YAML file, then apply environment overrides."""
    env = os.environ if environ is None else environ
    raw: Dict[str, Any] = {}

    if config_path and os.path.isfile(config_path):
        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config from {config_path}: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")
        raw.update(data)
        logger.info(f"Loaded configuration from {config_path}")

    for env_name, key in _ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is not None and value.strip():
            raw[key] = value

    return build_config(raw)


# =============================================================================
# Text Fetcher
# =============================================================================


class HttpTextFetcher:
    """Fetch list documents over HTTP(S)."""

    def __init__(self, session: Optional[requests.Session] = None):
        self._session = session or requests.Session()
        self._session.headers["User-Agent"] = USER_AGENT

    def __call__(self, url: str, timeout_ms: int) -> str:
        response = self._session.get(url, timeout=timeout_ms / 1000)
        response.raise_for_status()
        # requests falls back to ISO-8859-1 for text/* without a charset
        if "charset" not in response.headers.get("Content-Type", "").lower():
            response.encoding = "utf-8"
        return response.text


# =============================================================================
# Domain List Parsing
# =============================================================================

TYPED_RULE_KINDS = {
    "domain": RuleKind.DOMAIN,
    "full": RuleKind.FULL,
    "keyword": RuleKind.KEYWORD,
    "regexp": RuleKind.REGEXP,
}


def _strip_comment(line: str) -> str:
    return line.split("#", 1)[0].strip()


def parse_rule(tokens: Sequence[str]) -> Optional[DomainRule]:
    """Classify the tokens of one list line; None if nothing usable remains."""
    if not tokens or not tokens[0]:
        return None
    head = tokens[0]
    following = tokens[1] if len(tokens) > 1 else ""

    if head.startswith("include:"):
        value = head[len("include:") :] or following
        return DomainRule(RuleKind.INCLUDE, value.lower()) if value else None

    if head == "include" and following:
        return DomainRule(RuleKind.INCLUDE, following.lower())

    kind_name, sep, value = head.partition(":")
    if sep and kind_name:
        kind = TYPED_RULE_KINDS.get(kind_name)
        value = value or following
        if kind is not None and value:
            return DomainRule(kind, value.lower())

    return DomainRule(RuleKind.DOMAIN, head.lower())


def parse_domain_list(text: str) -> List[DomainRule]:
    """Parse a domain-list-community document into rules.

    Comments (`#`) and blank lines are dropped, as are `@attr` annotations after
    the first token.
    """
    if text.startswith("\ufeff"):
        text = text[1:]

    rules: List[DomainRule] = []
    for raw_line in text.splitlines():
        line = _strip_comment(raw_line)
        if not line:
            continue
        tokens = line.split()
        tokens = tokens[:1] + [t for t in tokens[1:] if not t.startswith("@")]
        rule = parse_rule(tokens)
        if rule is not None:
            rules.append(rule)
    return rules


# =============================================================================
# Domain List Resolver
# =============================================================================


class DomainListResolver:
    """Fetches named lists and expands their includes into one domain set."""

    def __init__(
        self,
        *,
        base_url: str,
        fetch_fn: TextFetcher,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        retries: int = DEFAULT_RETRIES,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._base_url = normalize_base_url(base_url)
        self._fetch = fetch_fn
        self._timeout_ms = timeout_ms
        self._retries = retries
        self._sleep = sleep
        self._clock = clock

    def locator(self, key: str) -> str:
        return self._base_url + quote(key, safe="")

    def deadline_after(self, seconds: Optional[float]) -> Optional[float]:
        """Absolute deadline on this resolver's clock, or None for no limit."""
        return None if seconds is None else self._clock() + seconds

    def _attempt_timeout(self, url: str, deadline: Optional[float]) -> int:
        if deadline is None:
            return self._timeout_ms
        remaining_ms = int((deadline - self._clock()) * 1000)
        if remaining_ms <= 0:
            raise DeadlineExceeded(f"deadline exceeded before fetching {url}")
        return min(self._timeout_ms, remaining_ms)

    def load_rules(self, key: str, deadline: Optional[float] = None) -> List[DomainRule]:
        """Fetch and parse one list, retrying with a capped linear backoff."""
        url = self.locator(key)
        last_error: Optional[BaseException] = None

        for attempt in range(1, self._retries + 1):
            timeout_ms = self._attempt_timeout(url, deadline)
            try:
                text = self._fetch(url, timeout_ms)
            except Exception as e:
                last_error = e
                if attempt == self._retries:
                    break
                delay_ms = min(MAX_RETRY_DELAY_MS, attempt * RETRY_STEP_MS)
                logger.debug(
                    f"[fetch] retry {attempt}/{self._retries} for {url} in {delay_ms}ms: {e}"
                )
                self._sleep(delay_ms / 1000)
                continue
            return parse_domain_list(text)

        raise FetchError(url, last_error)

    def resolve(
        self, key: str, stack: Sequence[str] = (), deadline: Optional[float] = None
    ) -> ResolvedDomainSet:
        """Resolve `key` and its includes.

        `stack` holds the lists currently being expanded; meeting one of them
        again raises IncludeCycleError with the full path.
        """
        if key in stack:
            raise IncludeCycleError([*stack, key])

        rules = self.load_rules(key, deadline)
        result = ResolvedDomainSet(total_rules=len(rules))
        path = [*stack, key]

        for rule in rules:
            if rule.kind is RuleKind.INCLUDE:
                result.include_count += 1
                result.merge(self.resolve(rule.value, path, deadline))
            elif rule.kind is RuleKind.KEYWORD:
                result.skipped_keyword += 1
            elif rule.kind is RuleKind.REGEXP:
                result.skipped_regexp += 1
            else:
                result.domains.add(rule.value)

        return result


# =============================================================================
# Running-Config Parser
# =============================================================================

GROUP_DECL_RE = re.compile(r"^object-group\s+(?P<kind>\S+)\s+(?P<name>\S+)$")
DESCRIPTION_RE = re.compile(r"^description(?:\s+(?P<text>.*))?$")
MEMBER_RE = re.compile(r"^include\s+(?P<domain>\S+)")
ROUTE_RE = re.compile(
    r"^(?:dns-proxy\s+)?route\s+object-group\s+(?P<group>\S+)\s+(?P<interface>\S+)(?P<flags>.*)$"
)
ROUTE_DISABLE_RE = re.compile(r"^(?:dns-proxy\s+)?route\s+disable$")
BLOCK_SEPARATOR = "!"


class ParserState(Enum):
    OUTSIDE = "outside"
    IN_GROUP = "in-group"
    ROUTES = "routes"


@dataclass
class _GroupDraft:
    name: str
    descriptions: List[str] = field(default_factory=list)
    members: List[str] = field(default_factory=list)

    def freeze(self) -> ObjectGroup:
        return ObjectGroup(self.name, tuple(self.descriptions), tuple(self.members))


def _unquote(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] == '"':
        return text[1:-1].strip()
    return text


def parse_running_config(text: str) -> ParsedConfig:
    """Extract fqdn object-groups and dns-proxy routes from a running-config dump.

    A bare `route disable` line disables the closest route statement seen since
    the last block separator; without one it is ignored. Lines the parser does
    not recognise are skipped.
    """
    drafts: List[_GroupDraft] = []
    routes: List[RouteBinding] = []
    state = ParserState.OUTSIDE
    current: Optional[_GroupDraft] = None
    last_route: Optional[int] = None

    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            continue

        if line == BLOCK_SEPARATOR:
            state, current, last_route = ParserState.OUTSIDE, None, None
            continue

        decl = GROUP_DECL_RE.match(line)
        if decl:
            last_route = None
            if decl.group("kind").lower() == "fqdn":
                current = _GroupDraft(decl.group("name"))
                drafts.append(current)
                state = ParserState.IN_GROUP
            else:
                state, current = ParserState.OUTSIDE, None
            continue

        route = ROUTE_RE.match(line)
        if route:
            flags = route.group("flags").split()
            routes.append(
                RouteBinding(
                    group=route.group("group"),
                    interface=route.group("interface"),
                    enabled="disable" not in flags,
                )
            )
            last_route = len(routes) - 1
            state, current = ParserState.ROUTES, None
            continue

        if ROUTE_DISABLE_RE.match(line):
            if last_route is None:
                logger.debug(f"[routes] ignore disable without preceding route (line {lineno})")
            else:
                routes[last_route] = replace(routes[last_route], enabled=False)
            continue

        if state is ParserState.IN_GROUP and current is not None:
            desc = DESCRIPTION_RE.match(line)
            if desc:
                current.descriptions.append(_unquote(desc.group("text") or ""))
                continue
            member = MEMBER_RE.match(line)
            if member:
                current.members.append(member.group("domain").lower())
                continue
            if not raw_line[:1].isspace():
                # an unindented statement closes the group block
                state, current = ParserState.OUTSIDE, None

    return ParsedConfig(
        groups=tuple(d.freeze() for d in drafts),
        routes=tuple(routes),
    )


def render_config(parsed: ParsedConfig) -> str:
    """Write a parsed snapshot back in running-config form."""
    lines: List[str] = []
    for group in parsed.groups:
        lines.append(f"object-group fqdn {group.name}")
        for description in group.descriptions:
            lines.append(f' description "{description}"' if description else " description")
        for member in group.members:
            lines.append(f" include {member}")
        lines.append(BLOCK_SEPARATOR)

    if parsed.routes:
        lines.append("dns-proxy")
        for route in parsed.routes:
            lines.append(f" route object-group {route.group} {route.interface} auto")
            if not route.enabled:
                lines.append(" route disable")
        lines.append(BLOCK_SEPARATOR)

    return "\n".join(lines) + "\n"


# =============================================================================
# Slug Normalizer
# =============================================================================

SPLIT_MARKER_RE = re.compile(r"\s*\[\s*\d+\s*/\s*\d+\s*\]\s*$")
NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def slugify(description: str) -> str:
    """Map a group description to a domain list name.

    "Facebook [2/2]" -> "facebook", "Office365" -> "office365",
    "Foo & Bar+" -> "foo-bar".
    """
    text = SPLIT_MARKER_RE.sub("", description.strip().lower())
    return NON_ALNUM_RE.sub("-", text).strip("-")


# =============================================================================
# Discovery
# =============================================================================

SPLIT_SUFFIX_RE = re.compile(r"^(?P<base>.+)-(?P<index>\d+)$")


def split_group_name(name: str, prefix: str) -> Tuple[str, int]:
    """Return (base name, split index) for a managed group name.

    `<base>-N` with N >= 2 is chunk N-1 of `<base>`, provided the base itself
    carries the prefix; anything else is a base group.
    """
    match = SPLIT_SUFFIX_RE.match(name)
    if match:
        base = match.group("base")
        index = int(match.group("index"))
        if index >= 2 and base.startswith(prefix):
            return base, index - 1
    return name, 0


def discover_lists(parsed: ParsedConfig, prefix: str) -> Discovery:
    """Group prefix-matched object-groups into logical lists."""
    discovery = Discovery()
    managed: List[ManagedGroup] = []
    invalid_splits: List[Tuple[str, int, str]] = []

    for group in parsed.groups:
        if not group.name.startswith(prefix):
            continue
        if len(group.descriptions) > 1:
            discovery.warnings.append(
                ParseWarning(group.name, f"multiple descriptions for {group.name}")
            )
        description = group.description.strip()
        if not description or not slugify(description):
            discovery.warnings.append(
                ParseWarning(group.name, f"skip {group.name}: empty or invalid description")
            )
            discovery.skipped.append(group.name)
            base, index = split_group_name(group.name, prefix)
            if index > 0:
                invalid_splits.append((base, index, group.name))
            continue
        base, index = split_group_name(group.name, prefix)
        managed.append(
            ManagedGroup(
                name=group.name,
                description=description,
                base_name=base,
                split_index=index,
                members=tuple(dict.fromkeys(group.members)),
            )
        )

    discovery.group_count = len(managed)
    by_base: Dict[str, LogicalList] = {}

    for group in managed:
        if group.split_index == 0:
            by_base[group.name] = LogicalList(
                base_name=group.name,
                description=group.description,
                slug=slugify(group.description),
                groups={0: group},
            )

    for group in managed:
        if group.split_index == 0:
            continue
        logical = by_base.get(group.base_name)
        if logical is None:
            discovery.warnings.append(
                ParseWarning(
                    group.name, f"skip {group.name}: split group without base {group.base_name}"
                )
            )
            discovery.skipped.append(group.name)
            continue
        logical.groups[group.split_index] = group

    for base, index, name in invalid_splits:
        if base in by_base:
            by_base[base].reserved[index] = name

    for route in parsed.routes:
        base, _ = split_group_name(route.group, prefix)
        logical = by_base.get(base)
        if logical is None or route.group not in {g.name for g in logical.groups.values()}:
            continue
        logical.routes[(route.group, route.interface)] = route
        if not route.enabled:
            discovery.disabled_routes.append(route)

    discovery.lists = list(by_base.values())
    return discovery


# =============================================================================
# Router Client Interface and Implementations
# =============================================================================


class RouterClient(ABC):
    """Abstract access to the router's configuration."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the client name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Check the router (or config source) is reachable."""
        pass

    @abstractmethod
    def get_running_config(self) -> str:
        """Return the current running-config text."""
        pass

    @abstractmethod
    def apply_commands(self, commands: List[str]) -> bool:
        """Apply CLI commands in order. Returns False if anything failed."""
        pass


def _rci_errors(entry: Any) -> List[str]:
    parse = entry.get("parse") if isinstance(entry, dict) else None
    statuses = parse.get("status") if isinstance(parse, dict) else None
    if not isinstance(statuses, list):
        return []
    return [
        str(s.get("message") or "error")
        for s in statuses
        if isinstance(s, dict) and s.get("status") == "error"
    ]


class KeeneticRCIClient(RouterClient):
    """Keenetic router reached through its RCI HTTP interface."""

    def __init__(self, url: str, username: str = "", password: str = "", timeout: float = 10.0):
        self._url = url.rstrip("/")
        self._timeout = timeout
        self._session = requests.Session()
        if username and password:
            self._session.auth = HTTPBasicAuth(username, password)

    @property
    def name(self) -> str:
        return "Keenetic RCI"

    def test_connection(self) -> bool:
        try:
            response = self._session.get(f"{self._url}/rci/show/version", timeout=self._timeout)
            response.raise_for_status()
            logger.info(f"{self.name} connection successful")
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def _parse(self, commands: List[str]) -> List[Any]:
        response = self._session.post(
            f"{self._url}/rci/",
            json=[{"parse": command} for command in commands],
            timeout=self._timeout,
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, list):
            raise ValueError(f"expected list, got {type(data).__name__}")
        return data

    def get_running_config(self) -> str:
        try:
            data = self._parse(["show running-config"])
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Failed to read running-config from {self.name}: {e}")
            raise

        lines: List[str] = []
        for entry in data:
            parse = entry.get("parse") if isinstance(entry, dict) else None
            message = parse.get("message") if isinstance(parse, dict) else None
            if isinstance(message, list):
                lines.extend(str(m) for m in message)
        return "\n".join(lines)

    def apply_commands(self, commands: List[str]) -> bool:
        batch = [*commands, "system configuration save"]
        try:
            data = self._parse(batch)
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"[apply] failed to send commands to {self.name}: {e}")
            return False

        ok = True
        for command, entry in zip(batch, data):
            for message in _rci_errors(entry):
                logger.error(f"[apply] {command}: {message}")
                ok = False
        if ok:
            logger.info(f"[apply] applied {len(commands)} command(s) via {self.name}")
        return ok


class FileRouterClient(RouterClient):
    """Read-only running-config loaded from a file."""

    def __init__(self, path: str):
        self._path = Path(path)

    @property
    def name(self) -> str:
        return f"file {self._path}"

    def test_connection(self) -> bool:
        if self._path.is_file():
            return True
        logger.error(f"Running-config file not found: {self._path}")
        return False

    def get_running_config(self) -> str:
        return self._path.read_text("utf-8")

    def apply_commands(self, commands: List[str]) -> bool:
        logger.error(f"[apply] {self.name} is read-only; use dry run or a router URL")
        return False


# =============================================================================
# Core Syncer
# =============================================================================


class GeositeSyncer:
    def __init__(
        self,
        *,
        router: RouterClient,
        resolver: DomainListResolver,
        config: SyncConfig,
    ):
        self.router = router
        self.resolver = resolver
        self.config = config

    # -- discovery -----------------------------------------------------------

    def _discover(self, parsed: ParsedConfig, report: SyncReport) -> List[LogicalList]:
        prefix = self.config.prefix
        discovery = discover_lists(parsed, prefix)

        for warning in discovery.warnings:
            logger.warning(f"[discover:warn] {warning.message}")
        logger.info(f'[discover] found {discovery.group_count} group(s) with prefix "{prefix}"')
        for route in discovery.disabled_routes:
            logger.info(f"[routes] disabled: {route.group}::{route.interface}")
        for name in discovery.skipped:
            report.outcomes[name] = ListOutcome.SKIPPED

        if discovery.lists or not self.config.initial_domains:
            return discovery.lists
        return self._seed_lists(report)

    def _seed_lists(self, report: SyncReport) -> List[LogicalList]:
        lists: List[LogicalList] = []
        for index, seed in enumerate(self.config.initial_domains):
            name = f"{self.config.prefix}{index}"
            slug = slugify(seed)
            if not slug:
                logger.warning(f"[discover:warn] skip {name}: empty or invalid description")
                report.outcomes[name] = ListOutcome.SKIPPED
                continue
            logger.info(f"[init] add {name} ({seed} -> {slug})")
            lists.append(LogicalList(base_name=name, description=seed, slug=slug, seed=seed))
        return lists

    # -- planning ------------------------------------------------------------

    def _route_commands(self, logical: LogicalList, names: Sequence[str]) -> List[Command]:
        """Assert the configured route for each group in chunk order.

        A group without its own route takes the flag of the group before it.
        """
        interface = self.config.route_interface
        if not interface:
            return []

        commands: List[Command] = []
        previous_enabled = True
        for name in names:
            binding = logical.routes.get((name, interface))
            enabled = binding.enabled if binding is not None else previous_enabled
            commands.append(Command(CommandKind.CREATE_ROUTE, name, interface=interface))
            if not enabled:
                commands.append(Command(CommandKind.DISABLE_ROUTE, name, interface=interface))
            previous_enabled = enabled
        return commands

    def _new_group_description(self, logical: LogicalList, index: int) -> str:
        if index == 0:
            return logical.description
        return f"{logical.slug} {index + 1}"

    def _plan_list(
        self, logical: LogicalList, report: SyncReport, deadline: Optional[float]
    ) -> None:
        try:
            resolved = self.resolver.resolve(logical.slug, deadline=deadline)
        except (FetchError, IncludeCycleError) as e:
            logger.error(f"[error] failed to load {logical.slug}: {e}")
            report.outcomes[logical.base_name] = ListOutcome.ERRORED
            existing_names = [g.name for _, g in sorted(logical.groups.items())]
            report.commands.extend(self._route_commands(logical, existing_names))
            return

        domains = sorted(resolved.domains)
        chunks = chunk(domains, self.config.max_entries_per_group) or [[]]
        names = desired_group_names(logical.base_name, len(chunks))
        blocked = [logical.reserved[i] for i in range(len(chunks)) if i in logical.reserved]
        if blocked:
            logger.warning(
                f"[sync:warn] skip {logical.base_name}: chunk group(s) "
                f"{', '.join(blocked)} have an empty or invalid description"
            )
            report.outcomes[logical.base_name] = ListOutcome.SKIPPED
            return

        commands: List[Command] = []

        for index, (name, members) in enumerate(zip(names, chunks)):
            existing = logical.groups.get(index)
            if existing is None:
                commands.append(Command(CommandKind.CREATE_GROUP, name))
                commands.append(
                    Command(
                        CommandKind.SET_DESCRIPTION,
                        name,
                        self._new_group_description(logical, index),
                    )
                )
            else:
                wanted = set(members)
                commands.extend(
                    Command(CommandKind.EXCLUDE_DOMAIN, name, d)
                    for d in existing.members
                    if d not in wanted
                )
            commands.extend(Command(CommandKind.INCLUDE_DOMAIN, name, d) for d in members)

        for index, group in sorted(logical.groups.items()):
            if index < len(chunks):
                continue
            commands.extend(
                Command(CommandKind.REMOVE_ROUTE, group.name, interface=r.interface)
                for r in logical.routes_for(group.name)
            )
            commands.append(Command(CommandKind.REMOVE_GROUP, group.name))

        commands.extend(self._route_commands(logical, names))
        report.commands.extend(commands)
        report.outcomes[logical.base_name] = ListOutcome.SYNCED
        report.domain_counts[logical.base_name] = len(domains)

        split = f" [split into {len(chunks)} groups]" if len(chunks) > 1 else ""
        logger.info(f"[sync] {logical.base_name} <= {logical.slug}: {len(domains)} domain(s){split}")
        if resolved.skipped_keyword or resolved.skipped_regexp:
            logger.info(
                f"[sync] {logical.base_name}: skipped {resolved.skipped_keyword} keyword, "
                f"{resolved.skipped_regexp} regexp rule(s)"
            )
        logger.debug(
            f"[sync] {logical.base_name}: {resolved.total_rules} rule(s), "
            f"{resolved.include_count} include(s)"
        )

    def plan(self, running_config: str) -> SyncReport:
        """Compute the commands converging `running_config` to the remote lists.

        Per-list fetch and cycle failures are logged and isolated; a passed
        deadline raises DeadlineExceeded for the whole run.
        """
        report = SyncReport()
        lists = self._discover(parse_running_config(running_config), report)
        if not lists:
            logger.info("No lists to sync")
            return report

        deadline = self.resolver.deadline_after(self.config.deadline_seconds)
        for logical in lists:
            self._plan_list(logical, report, deadline)
        return report

    def plan_drop(self, running_config: str) -> List[Command]:
        """Commands removing every managed group and the routes bound to them."""
        parsed = parse_running_config(running_config)
        prefix = self.config.prefix
        matched = [g.name for g in parsed.groups if g.name.startswith(prefix)]
        names = set(matched)
        logger.info(f"[drop] prefix={prefix}, groups={len(matched)}")

        route_keys = dict.fromkeys((r.group, r.interface) for r in parsed.routes if r.group in names)
        commands = [
            Command(CommandKind.REMOVE_ROUTE, group, interface=interface)
            for group, interface in route_keys
        ]
        commands.extend(Command(CommandKind.REMOVE_GROUP, name) for name in matched)
        return commands

    # -- output --------------------------------------------------------------

    def _emit(self, commands: List[Command]) -> bool:
        if not commands:
            logger.info("[apply] nothing to do")
            return True
        if self.config.dry_run:
            for command in commands:
                logger.info(f"[dry-run] {command}")
            return True
        logger.info(f"[apply] sending {len(commands)} command(s) to {self.router.name}")
        return self.router.apply_commands([str(c) for c in commands])

    def sync_once(self) -> SyncReport:
        report = self.plan(self.router.get_running_config())
        report.applied = self._emit(report.commands)
        return report

    def drop_all(self) -> SyncReport:
        report = SyncReport(commands=self.plan_drop(self.router.get_running_config()))
        report.applied = self._emit(report.commands)
        return report


# =============================================================================
# Factories
# =============================================================================


def create_resolver(config: SyncConfig) -> DomainListResolver:
    return DomainListResolver(
        base_url=config.base_url,
        fetch_fn=config.fetch_fn or HttpTextFetcher(),
        timeout_ms=config.timeout_ms,
        retries=config.retries,
    )


def create_router_client(config: SyncConfig) -> RouterClient:
    if config.running_config_path:
        return FileRouterClient(config.running_config_path)
    return KeeneticRCIClient(config.router_url, config.router_username, config.router_password)


# =============================================================================
# Main
# =============================================================================


def main():
    """Main entry point."""
    logger.info(f"keenetic-geosite-sync: {SYNC_ACTION}")

    if SYNC_ACTION not in ("sync", "drop"):
        logger.error(f"Invalid SYNC_ACTION: {SYNC_ACTION}. Use 'sync' or 'drop'")
        sys.exit(1)

    try:
        config = load_config(CONFIG_PATH)
    except ConfigurationError as e:
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    router = create_router_client(config)
    logger.info(f"Router: {router.name}")
    logger.info(f"List source: {config.base_url}")
    logger.info(f"Prefix: {config.prefix}, max entries per group: {config.max_entries_per_group}")
    if config.route_interface:
        logger.info(f"Route interface: {config.route_interface}")
    logger.info(f"Dry run: {config.dry_run}")

    if not router.test_connection():
        logger.error(f"Cannot reach {router.name}. Exiting.")
        sys.exit(1)

    syncer = GeositeSyncer(router=router, resolver=create_resolver(config), config=config)

    try:
        if SYNC_ACTION == "drop":
            report = syncer.drop_all()
        else:
            report = syncer.sync_once()
    except DeadlineExceeded as e:
        logger.error(f"[error] {e}; nothing applied")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, nothing applied")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)

    if not report.applied:
        sys.exit(1)


if __name__ == "__main__":
    main()
