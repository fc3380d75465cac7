#!/usr/bin/env python3
"""hetzner-private-dns-sync - Private Network DNS Synchronization

Keeps address records in a DNS zone in line with the servers attached to a
Hetzner Cloud private network. Each run fetches the network's members,
compares them with the servers recorded in a local state file and issues
the minimal set of RFC 2136 dynamic updates to converge. The tool is meant
to be run periodically (systemd timer, cron); a failed run stops at the
first failing operation and the next run picks up from the state file.

Options (command line flag / environment variable / config file key):

    Hetzner Cloud:
        --hcloud-api-token      HCLOUD_API_TOKEN       API token (required)
        --hcloud-api-url        HCLOUD_API_URL         API base URL
                                                       (default: https://api.hetzner.cloud/v1)
        --private-network-name  PRIVATE_NETWORK_NAME   Name of the private network (required)

    DNS server:
        --server-address        SERVER_ADDRESS         "tcp://ip:port" or "udp://ip:port" (required)
        --tsig-key-path         TSIG_KEY_PATH          File holding the raw TSIG key (required)
        --tsig-key-name         TSIG_KEY_NAME          Name of the TSIG key (required)
        --zone-name             ZONE_NAME              Zone the records are created in (required)

    Runtime:
        --state-directory       STATE_DIRECTORY        Directory holding state.json (required)
        --allow-private-network-change
                                ALLOW_PRIVATE_NETWORK_CHANGE
                                If the private network name changes between runs,
                                delete every record created for the old network
                                and start over. Without it the run fails instead.
        --timeout               TIMEOUT                Per-request timeout in seconds (default: 10)
        --log-level             LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
        --config                SYNC_CONFIG_PATH       Optional YAML file with any of the keys
                                                       above (underscored, e.g. zone_name)

    Precedence: command line > environment > config file > default.

State file:

    <state_directory>/state.json, human readable:

        {
          "private_network_name": "internal",
          "servers_synced": [
            {"hostname": "web-1", "id": 42, "ip_address": "10.0.0.2"}
          ],
          "version": 1
        }

    Removing an entry from servers_synced forces that server to be synced
    again on the next run.
"""

from __future__ import annotations

import argparse
import ipaddress
import json
import logging
import os
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple
from urllib.parse import urlsplit

import dns.exception
import dns.name
import dns.query
import dns.rcode
import dns.tsig
import dns.update
import requests
import yaml

# =============================================================================
# Constants
# =============================================================================

HCLOUD_API_URL = "https://api.hetzner.cloud/v1"
STATE_FILENAME = "state.json"
STATE_VERSION = 1
RECORD_TTL = 600
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_DNS_PORT = 53

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class SyncError(Exception):
    """Base class for every error that terminates a run."""


class ConfigurationError(SyncError):
    """Missing network, unreadable credentials or an unparsable state file."""


class DeniedOperationError(SyncError):
    """A destructive operation was needed but not authorized."""


class DataConsistencyError(SyncError):
    """The cloud side returned data that contradicts itself."""


class StateSaveError(SyncError):
    """The state file could not be written."""


class ProviderError(SyncError):
    """Transport or protocol failure from the cloud API or the DNS server."""


class ZoneRejectedError(ProviderError):
    """The DNS server answered the update with a non-NOERROR rcode."""

    def __init__(self, message: str, rcode: str = ""):
        super().__init__(message)
        self.rcode = rcode


class ZoneTransportError(ProviderError):
    """The update never got a valid answer (timeout, socket error, bad TSIG)."""


# =============================================================================
# Enums
# =============================================================================


class RenameOutcome(Enum):
    """How a run relates to the network name recorded in the state file.

    UNCHANGED: the state was built against the requested network.
    CHANGED_EMPTY: a different (or no) network was recorded but no records
                   exist, so the new name is adopted as is.
    CHANGED_NON_EMPTY_ALLOWED: records exist for another network and the
                   operator allowed them to be deleted.
    CHANGED_NON_EMPTY_DENIED: records exist for another network and the
                   operator did not allow deleting them; the run fails.
    """

    UNCHANGED = "unchanged"
    CHANGED_EMPTY = "changed_empty"
    CHANGED_NON_EMPTY_ALLOWED = "changed_non_empty_allowed"
    CHANGED_NON_EMPTY_DENIED = "changed_non_empty_denied"


class RecordAction(Enum):
    CREATED = "created"
    UPDATED = "updated"


class EventKind(Enum):
    NETWORK_ADOPTED = "network_adopted"
    RENAME_CLEANUP = "rename_cleanup"
    DIFF_COMPUTED = "diff_computed"
    CREATE_REJECTED = "create_rejected"
    RECORD_CREATED = "record_created"
    RECORD_UPDATED = "record_updated"
    RECORD_DELETED = "record_deleted"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Server:
    """A cloud server as reflected in DNS. Servers compare equal by id."""

    id: int
    ip_address: str = field(compare=False)
    hostname: str = field(compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "ip_address": self.ip_address, "hostname": self.hostname}


@dataclass
class SyncState:
    """Servers believed to have a record in the zone, and the network they came from."""

    network_name: str = ""
    servers_synced: List[Server] = field(default_factory=list)

    def known_ids(self) -> Set[int]:
        return {s.id for s in self.servers_synced}

    def find(self, server_id: int) -> Optional[Server]:
        for server in self.servers_synced:
            if server.id == server_id:
                return server
        return None

    def add(self, server: Server) -> None:
        self.servers_synced = [s for s in self.servers_synced if s.id != server.id]
        self.servers_synced.append(server)

    def remove(self, server_id: int) -> None:
        self.servers_synced = [s for s in self.servers_synced if s.id != server_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "private_network_name": self.network_name,
            "servers_synced": [s.to_dict() for s in self.servers_synced],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SyncState":
        if not isinstance(data, dict):
            raise ConfigurationError("State must be a JSON object")

        missing = [k for k in ("private_network_name", "servers_synced") if k not in data]
        if missing:
            raise ConfigurationError(f"State is missing required key(s): {', '.join(missing)}")

        network_name = data["private_network_name"]
        if not isinstance(network_name, str):
            raise ConfigurationError("State field 'private_network_name' must be a string")

        raw_servers = data["servers_synced"]
        if not isinstance(raw_servers, list):
            raise ConfigurationError("State field 'servers_synced' must be a list")

        servers: List[Server] = []
        seen: Set[int] = set()
        for item in raw_servers:
            if not isinstance(item, dict):
                raise ConfigurationError(f"Malformed server entry in state: {item!r}")
            server_id = item.get("id")
            ip_address = item.get("ip_address")
            hostname = item.get("hostname")
            if not isinstance(server_id, int) or isinstance(server_id, bool):
                raise ConfigurationError(f"Server entry has no integer id: {item!r}")
            if not isinstance(ip_address, str) or not isinstance(hostname, str):
                raise ConfigurationError(f"Server entry {server_id} is missing ip_address/hostname")
            if server_id in seen:
                raise ConfigurationError(f"Server id {server_id} appears more than once in state")
            seen.add(server_id)
            servers.append(Server(id=server_id, ip_address=ip_address, hostname=hostname))

        return cls(network_name=network_name, servers_synced=servers)


@dataclass(frozen=True)
class SyncDiff:
    to_add: Set[int]
    to_remove: Set[int]

    @property
    def empty(self) -> bool:
        return not self.to_add and not self.to_remove


@dataclass(frozen=True)
class SyncEvent:
    """An operation-level event emitted while reconciling."""

    kind: EventKind
    server: Optional[Server] = None
    detail: str = ""

    def __str__(self) -> str:
        parts = [self.kind.value]
        if self.server is not None:
            parts.append(f"{self.server.hostname} (id={self.server.id}, ip={self.server.ip_address})")
        if self.detail:
            parts.append(self.detail)
        return ": ".join(parts)


@dataclass
class SyncReport:
    rename: RenameOutcome = RenameOutcome.UNCHANGED
    added: List[int] = field(default_factory=list)
    removed: List[int] = field(default_factory=list)


Observer = Callable[[SyncEvent], None]

_EVENT_LEVELS: Dict[EventKind, int] = {
    EventKind.NETWORK_ADOPTED: logging.INFO,
    EventKind.RENAME_CLEANUP: logging.WARNING,
    EventKind.DIFF_COMPUTED: logging.INFO,
    EventKind.CREATE_REJECTED: logging.WARNING,
    EventKind.RECORD_CREATED: logging.INFO,
    EventKind.RECORD_UPDATED: logging.INFO,
    EventKind.RECORD_DELETED: logging.INFO,
}


def log_event(event: SyncEvent) -> None:
    """Default observer: forward events to the module logger."""
    logger.log(_EVENT_LEVELS.get(event.kind, logging.DEBUG), str(event))


# =============================================================================
# State Management
# =============================================================================


class StateStore:
    def __init__(self, path: str):
        self.path = Path(path)

    @classmethod
    def from_directory(cls, directory: str) -> "StateStore":
        return cls(str(Path(directory) / STATE_FILENAME))

    def load(self) -> SyncState:
        """Read the state file. Missing or empty files give the zero state."""
        if not self.path.exists():
            return SyncState()
        try:
            raw = self.path.read_text("utf-8")
        except OSError as e:
            raise ConfigurationError(f"Failed to read state file {self.path}: {e}") from e

        if not raw.strip():
            return SyncState()

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"State file {self.path} is not valid JSON: {e}") from e
        try:
            return SyncState.from_dict(data)
        except ConfigurationError as e:
            raise ConfigurationError(f"State file {self.path} is malformed: {e}") from e

    def save(self, state: SyncState) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        payload = json.dumps(state.to_dict(), indent=2, sort_keys=True)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            tmp_path.replace(self.path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StateSaveError(f"Failed to save state file {self.path}: {e}") from e

    def open(self) -> "StateHandle":
        return StateHandle(self, self.load())


class StateHandle:
    """In-memory state bound to its store for the duration of a run.

    Use as a context manager: the state is written back when the block
    exits, whether it exits normally or through an exception. A failing
    write on exit raises StateSaveError.
    """

    def __init__(self, store: StateStore, state: SyncState):
        self.store = store
        self.state = state

    def save(self) -> None:
        self.store.save(self.state)

    def __enter__(self) -> "StateHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            logger.debug(f"Flushing state to {self.store.path} after error: {exc}")
        self.save()
        return False


# =============================================================================
# Membership Provider Interface and Implementations
# =============================================================================


class MembershipProvider(ABC):
    """Abstract base class for sources of private network membership."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def list_member_ids(self, network_name: str) -> List[int]:
        """Return the ids of the servers attached to the network."""
        pass

    @abstractmethod
    def get_server(self, network_name: str, server_id: int) -> Server:
        """Return hostname and private IP on the network for one server."""
        pass

    def hydrate(self, network_name: str, server_ids: Iterable[int]) -> List[Server]:
        """Fetch details for every id, stopping at the first failure."""
        return [self.get_server(network_name, server_id) for server_id in server_ids]


class HCloudMembershipProvider(MembershipProvider):
    """Hetzner Cloud API membership provider."""

    def __init__(
        self,
        api_token: str,
        api_url: str = HCLOUD_API_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._url = api_url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update({"Authorization": f"Bearer {api_token}"})
        # Networks looked up so far, by name.
        self._networks: Dict[str, Dict[str, Any]] = {}

    @property
    def name(self) -> str:
        return "Hetzner Cloud"

    def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> requests.Response:
        try:
            return self._session.get(f"{self._url}{path}", params=params, timeout=self._timeout)
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"Request to {self.name} {path} failed: {e}") from e

    def _json(self, response: requests.Response, path: str) -> Dict[str, Any]:
        try:
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"{self.name} {path} returned an error: {e}") from e
        except ValueError as e:
            raise ProviderError(f"{self.name} {path} returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ProviderError(
                f"Unexpected response format from {self.name} {path}: "
                f"expected object, got {type(data).__name__}"
            )
        return data

    def _retrieve_network(self, network_name: str) -> Dict[str, Any]:
        if network_name in self._networks:
            return self._networks[network_name]

        logger.debug(f"Looking up private network '{network_name}'")
        data = self._json(self._get("/networks", params={"name": network_name}), "/networks")
        networks = data.get("networks")
        if not isinstance(networks, list):
            raise ProviderError(f"Unexpected response format from {self.name} /networks")
        if not networks:
            raise ConfigurationError(
                f"Private network with name '{network_name}' not found on the Hetzner account"
            )
        if len(networks) > 1:
            logger.warning(
                f"{len(networks)} networks named '{network_name}' returned by {self.name}; "
                f"proceeding with the first one"
            )

        network = networks[0]
        if not isinstance(network, dict) or "id" not in network:
            raise ProviderError(f"Malformed network entry from {self.name}: {network!r}")
        self._networks[network_name] = network
        return network

    def list_member_ids(self, network_name: str) -> List[int]:
        network = self._retrieve_network(network_name)
        servers = network.get("servers") or []
        if not isinstance(servers, list):
            raise ProviderError(f"Malformed server list for network '{network_name}'")
        return [int(s) for s in servers]

    def get_server(self, network_name: str, server_id: int) -> Server:
        network_id = self._retrieve_network(network_name)["id"]
        path = f"/servers/{server_id}"
        response = self._get(path)
        if response.status_code == 404:
            raise DataConsistencyError(f"Couldn't get information for server with id {server_id}")

        server = self._json(response, path).get("server")
        if not isinstance(server, dict):
            raise DataConsistencyError(f"Couldn't get information for server with id {server_id}")

        hostname = str(server.get("name") or "").strip()
        if not hostname:
            raise DataConsistencyError(f"Server with id {server_id} has no name")

        ip_address = ""
        for attachment in server.get("private_net") or []:
            if not isinstance(attachment, dict):
                continue
            if attachment.get("network") == network_id and attachment.get("ip"):
                ip_address = str(attachment["ip"])
                break
        if not ip_address:
            raise DataConsistencyError(
                f"Server with id {server_id} doesn't have a network with id {network_id} attached to it"
            )

        return Server(id=server_id, ip_address=ip_address, hostname=hostname)


# =============================================================================
# Zone Mutator Interface and Implementations
# =============================================================================


class ZoneMutator(ABC):
    """Abstract base class for DNS servers accepting address record changes.

    Implementations raise ZoneRejectedError when the server answers but
    refuses the change, and ZoneTransportError when no usable answer
    arrives.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the mutator name for logging."""
        pass

    @abstractmethod
    def create(self, fqdn: str, address: str, ttl: int, zone: str) -> None:
        """Create an address record; rejected if one already exists."""
        pass

    @abstractmethod
    def update(self, fqdn: str, address: str, ttl: int, zone: str) -> None:
        """Replace the address record at fqdn."""
        pass

    @abstractmethod
    def delete(self, fqdn: str, zone: str) -> None:
        """Delete the address records at fqdn."""
        pass


def parse_server_address(value: str) -> Tuple[str, str, int]:
    """Split "tcp://ip:port" or "udp://ip:port" into (protocol, ip, port)."""
    try:
        parts = urlsplit(value.strip())
        port = parts.port
    except ValueError as e:
        raise ConfigurationError(f"Invalid DNS server address '{value}': {e}") from e

    protocol = parts.scheme.lower()
    if protocol not in ("tcp", "udp"):
        raise ConfigurationError(
            f"Invalid DNS server address '{value}': expected tcp://ip:port or udp://ip:port"
        )
    host = parts.hostname or ""
    try:
        ipaddress.ip_address(host)
    except ValueError as e:
        raise ConfigurationError(f"Invalid DNS server address '{value}': {e}") from e
    return protocol, host, port or DEFAULT_DNS_PORT


def read_tsig_key(path: str) -> bytes:
    """Read the raw TSIG secret from a file."""
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise ConfigurationError(f"Failed to read TSIG key from {path}: {e}") from e


def _address_rdtype(address: str) -> str:
    try:
        parsed = ipaddress.ip_address(address)
    except ValueError as e:
        raise DataConsistencyError(f"'{address}' is not an IP address") from e
    return "AAAA" if parsed.version == 6 else "A"


class Rfc2136ZoneMutator(ZoneMutator):
    """RFC 2136 dynamic updates signed with an HMAC-SHA256 TSIG key."""

    def __init__(
        self,
        server_address: str,
        key_name: str,
        key_secret: bytes,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._protocol, self._host, self._port = parse_server_address(server_address)
        self._key = dns.tsig.Key(key_name, key_secret, algorithm=dns.tsig.HMAC_SHA256)
        self._timeout = timeout_seconds

    @property
    def name(self) -> str:
        return f"RFC 2136 ({self._protocol}://{self._host}:{self._port})"

    def _message(self, zone: str) -> dns.update.UpdateMessage:
        return dns.update.UpdateMessage(zone, keyring=self._key)

    def _send(self, message: dns.update.UpdateMessage, action: str) -> None:
        try:
            if self._protocol == "udp":
                response = dns.query.udp(
                    message, self._host, timeout=self._timeout, port=self._port
                )
            else:
                response = dns.query.tcp(
                    message, self._host, timeout=self._timeout, port=self._port
                )
        except (dns.exception.DNSException, OSError) as e:
            raise ZoneTransportError(f"Failed to {action} via {self.name}: {e}") from e

        rcode = response.rcode()
        if rcode != dns.rcode.NOERROR:
            rcode_text = dns.rcode.to_text(rcode)
            raise ZoneRejectedError(f"{self.name} rejected {action}: {rcode_text}", rcode=rcode_text)

    def create(self, fqdn: str, address: str, ttl: int, zone: str) -> None:
        rdtype = _address_rdtype(address)
        name = dns.name.from_text(fqdn)
        message = self._message(zone)
        message.absent(name, rdtype)
        message.add(name, ttl, rdtype, address)
        self._send(message, f"create {rdtype} {fqdn}")

    def update(self, fqdn: str, address: str, ttl: int, zone: str) -> None:
        rdtype = _address_rdtype(address)
        message = self._message(zone)
        message.replace(dns.name.from_text(fqdn), ttl, rdtype, address)
        self._send(message, f"update {rdtype} {fqdn}")

    def delete(self, fqdn: str, zone: str) -> None:
        name = dns.name.from_text(fqdn)
        message = self._message(zone)
        message.delete(name, "A")
        message.delete(name, "AAAA")
        self._send(message, f"delete {fqdn}")


class ZoneAdapter:
    """Maps servers to records in one zone and applies create-or-update."""

    def __init__(
        self,
        mutator: ZoneMutator,
        zone_name: str,
        ttl: int = RECORD_TTL,
        observer: Optional[Observer] = None,
    ):
        self.mutator = mutator
        self.zone_name = zone_name.strip().strip(".")
        self.ttl = ttl
        # None means log_event unless sync() hands over its own observer.
        self.observer = observer

    def fqdn(self, server: Server) -> str:
        return f"{server.hostname}.{self.zone_name}"

    def add_server(self, server: Server) -> RecordAction:
        fqdn = self.fqdn(server)
        try:
            self.mutator.create(fqdn, server.ip_address, self.ttl, self.zone_name)
            return RecordAction.CREATED
        except ZoneRejectedError as e:
            # Assume the record already exists and overwrite it.
            (self.observer or log_event)(SyncEvent(EventKind.CREATE_REJECTED, server, str(e)))

        self.mutator.update(fqdn, server.ip_address, self.ttl, self.zone_name)
        return RecordAction.UPDATED

    def remove_server(self, server: Server) -> None:
        self.mutator.delete(self.fqdn(server), self.zone_name)


# =============================================================================
# Core Reconciler
# =============================================================================


def classify_network_change(
    state: SyncState, network_name: str, allow_network_change: bool
) -> RenameOutcome:
    if state.network_name == network_name:
        return RenameOutcome.UNCHANGED
    if not state.servers_synced:
        return RenameOutcome.CHANGED_EMPTY
    if allow_network_change:
        return RenameOutcome.CHANGED_NON_EMPTY_ALLOWED
    return RenameOutcome.CHANGED_NON_EMPTY_DENIED


def compute_diff(known_ids: Iterable[int], current_ids: Iterable[int]) -> SyncDiff:
    known = set(known_ids)
    current = set(current_ids)
    return SyncDiff(to_add=current - known, to_remove=known - current)


class Reconciler:
    """Converges the zone towards the membership of one private network.

    Every record change is followed by a state write, so an interrupted
    run leaves the state file describing exactly the changes that reached
    the DNS server.
    """

    def __init__(
        self,
        *,
        membership: MembershipProvider,
        zone: ZoneAdapter,
        observer: Optional[Observer] = None,
    ):
        self.membership = membership
        self.zone = zone
        self.observer = observer or log_event

    def _emit(self, kind: EventKind, server: Optional[Server] = None, detail: str = "") -> None:
        self.observer(SyncEvent(kind, server, detail))

    def recover_from_rename(
        self, handle: StateHandle, network_name: str, allow_network_change: bool
    ) -> RenameOutcome:
        state = handle.state
        outcome = classify_network_change(state, network_name, allow_network_change)

        if outcome is RenameOutcome.UNCHANGED:
            return outcome

        if outcome is RenameOutcome.CHANGED_NON_EMPTY_DENIED:
            raise DeniedOperationError(
                f"The private network name changed from '{state.network_name}' to "
                f"'{network_name}' while {len(state.servers_synced)} record(s) exist for the old "
                f"network. Pass --allow-private-network-change to delete them and start over."
            )

        if outcome is RenameOutcome.CHANGED_NON_EMPTY_ALLOWED:
            self._emit(
                EventKind.RENAME_CLEANUP,
                detail=(
                    f"network changed from '{state.network_name}' to '{network_name}', "
                    f"deleting {len(state.servers_synced)} record(s)"
                ),
            )
            for server in list(state.servers_synced):
                self.zone.remove_server(server)
                state.remove(server.id)
                handle.save()
                self._emit(EventKind.RECORD_DELETED, server)

        previous = state.network_name
        state.network_name = network_name
        handle.save()
        self._emit(EventKind.NETWORK_ADOPTED, detail=f"'{previous}' -> '{network_name}'")
        return outcome

    def apply_removals(self, handle: StateHandle, server_ids: Iterable[int]) -> List[int]:
        removed: List[int] = []
        for server_id in server_ids:
            server = handle.state.find(server_id)
            if server is None:
                continue
            self.zone.remove_server(server)
            handle.state.remove(server_id)
            handle.save()
            removed.append(server_id)
            self._emit(EventKind.RECORD_DELETED, server)
        return removed

    def apply_additions(self, handle: StateHandle, servers: Iterable[Server]) -> List[int]:
        added: List[int] = []
        for server in servers:
            action = self.zone.add_server(server)
            handle.state.add(server)
            handle.save()
            added.append(server.id)
            kind = EventKind.RECORD_CREATED if action is RecordAction.CREATED else EventKind.RECORD_UPDATED
            self._emit(kind, server)
        return added

    def sync_once(
        self, handle: StateHandle, network_name: str, *, allow_network_change: bool = False
    ) -> SyncReport:
        report = SyncReport()
        report.rename = self.recover_from_rename(handle, network_name, allow_network_change)

        current_ids = self.membership.list_member_ids(network_name)
        diff = compute_diff(handle.state.known_ids(), current_ids)
        to_add = sorted(diff.to_add)
        to_remove = sorted(diff.to_remove)
        self._emit(EventKind.DIFF_COMPUTED, detail=f"to add: {to_add}, to remove: {to_remove}")

        if diff.empty:
            return report

        # Hydrate first so an inconsistent server fails the run before any change.
        servers_to_add = self.membership.hydrate(network_name, to_add)

        # Removals go first: a new server may reuse the hostname of a removed one.
        report.removed = self.apply_removals(handle, to_remove)
        report.added = self.apply_additions(handle, servers_to_add)
        return report


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class Config:
    server_address: str = ""
    tsig_key_path: str = ""
    tsig_key_name: str = ""
    hcloud_api_token: str = ""
    hcloud_api_url: str = HCLOUD_API_URL
    private_network_name: str = ""
    zone_name: str = ""
    state_directory: str = ""
    allow_private_network_change: bool = False
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    log_level: str = "INFO"


REQUIRED_OPTIONS = (
    "server_address",
    "tsig_key_path",
    "tsig_key_name",
    "hcloud_api_token",
    "private_network_name",
    "zone_name",
    "state_directory",
)


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hetzner-private-dns-sync",
        description="Sync DNS address records with the servers of a Hetzner Cloud private network.",
    )
    parser.add_argument("--config", help="YAML file with option defaults")
    parser.add_argument("--server-address", help='DNS server as "tcp|udp://ip:port"')
    parser.add_argument("--tsig-key-path", help="Path to the raw TSIG key")
    parser.add_argument("--tsig-key-name", help="Name of the TSIG key")
    parser.add_argument("--hcloud-api-token", help="Hetzner Cloud API token")
    parser.add_argument("--hcloud-api-url", help="Hetzner Cloud API base URL")
    parser.add_argument("--private-network-name", help="Name of the private network")
    parser.add_argument("--zone-name", help="DNS zone name")
    parser.add_argument("--state-directory", help="Directory to keep state in")
    parser.add_argument(
        "--allow-private-network-change",
        action="store_true",
        default=None,
        help=(
            "Delete every record created for a previous private network when the "
            "network name changes, instead of failing"
        ),
    )
    parser.add_argument("--timeout", help="Request timeout in seconds")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    return parser


def _load_config_file(config_path: str) -> Dict[str, Any]:
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load config from {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a mapping")

    known = {f.name for f in fields(Config)}
    unknown = sorted(str(k) for k in data if k not in known)
    if unknown:
        logger.warning(f"Ignoring unknown keys in {config_path}: {', '.join(unknown)}")
    return {k: v for k, v in data.items() if k in known}


def _coerce(name: str, value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        return _parse_bool(value, default=default)
    if isinstance(default, float):
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Option {name} must be a number, got {value!r}") from e
    return str(value).strip()


def load_config(
    argv: Optional[List[str]] = None, environ: Optional[Mapping[str, str]] = None
) -> Config:
    """Merge command line, environment and config file into a Config."""
    env = os.environ if environ is None else environ
    args = build_parser().parse_args(argv)

    config_path = args.config or env.get("SYNC_CONFIG_PATH", "")
    file_values = _load_config_file(config_path) if config_path else {}

    config = Config()
    for f in fields(Config):
        default = getattr(config, f.name)
        value = getattr(args, f.name, None)
        if value is None:
            env_value = env.get(f.name.upper(), "")
            value = env_value if env_value.strip() else None
        if value is None:
            value = file_values.get(f.name)
        if value is not None:
            setattr(config, f.name, _coerce(f.name, value, default))
    return config


def validate_config(config: Config) -> List[str]:
    """Return a list of configuration problems, empty when valid."""
    errors = []
    for name in REQUIRED_OPTIONS:
        if not getattr(config, name):
            errors.append(f"--{name.replace('_', '-')} (or {name.upper()}) is required")

    if config.server_address:
        try:
            parse_server_address(config.server_address)
        except ConfigurationError as e:
            errors.append(str(e))

    if config.timeout <= 0:
        errors.append("--timeout must be positive")

    if config.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        errors.append(f"Unsupported log level: {config.log_level}")

    return errors


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )


# =============================================================================
# Main
# =============================================================================


def sync(
    config: Config,
    membership: MembershipProvider,
    zone: ZoneAdapter,
    observer: Optional[Observer] = None,
) -> SyncReport:
    """Run one reconciliation against the state file in config.state_directory.

    The observer also receives the zone's events unless the zone adapter
    was built with an observer of its own.
    """
    if observer is not None and zone.observer is None:
        zone.observer = observer
    reconciler =Reconciler(membership=membership, zone=zone, observer=observer)
    with StateStore.from_directory(config.state_directory).open() as handle:
        logger.info(
            f"Current state: network '{handle.state.network_name}', "
            f"{len(handle.state.servers_synced)} server(s) synced"
        )
        return reconciler.sync_once(
            handle,
            config.private_network_name,
            allow_network_change=config.allow_private_network_change,
        )


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    try:
        config = load_config(argv)
    except ConfigurationError as e:
        configure_logging("INFO")
        logger.error(str(e))
        sys.exit(2)

    configure_logging(config.log_level)

    errors = validate_config(config)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(2)

    logger.info(
        f"hetzner-private-dns-sync: network '{config.private_network_name}' -> "
        f"zone '{config.zone_name}'"
    )

    try:
        mutator = Rfc2136ZoneMutator(
            config.server_address,
            config.tsig_key_name,
            read_tsig_key(config.tsig_key_path),
            timeout_seconds=config.timeout,
        )
        zone = ZoneAdapter(mutator, config.zone_name)
        membership = HCloudMembershipProvider(
            config.hcloud_api_token,
            api_url=config.hcloud_api_url,
            timeout_seconds=config.timeout,
        )
        logger.info(f"DNS server: {mutator.name}")

        report = sync(config, membership, zone)
    except KeyboardInterrupt:
        logger.info("Interrupted, state saved up to the last completed operation")
        sys.exit(130)
    except SyncError as e:
        logger.error(f"Sync failed: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)

    logger.info(
        f"Done: {len(report.added)} added, {len(report.removed)} removed "
        f"(network: {report.rename.value})"
    )


if __name__ == "__main__":
    main()
