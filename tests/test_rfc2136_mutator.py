"""Unit tests for Rfc2136ZoneMutator and ZoneAdapter."""

from typing import List
from unittest.mock import MagicMock, patch

import dns.exception
import dns.name
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import pytest

from hetzner_private_dns_sync.cli import (
    ConfigurationError,
    DataConsistencyError,
    RecordAction,
    Rfc2136ZoneMutator,
    Server,
    SyncEvent,
    ZoneAdapter,
    ZoneRejectedError,
    ZoneTransportError,
    parse_server_address,
    read_tsig_key,
)

ZONE = "internal.example.com"
KEY = b"0123456789abcdef0123456789abcdef"


def make_answer(rcode: int = dns.rcode.NOERROR) -> MagicMock:
    response = MagicMock()
    response.rcode.return_value = rcode
    return response


def make_mutator(address: str = "tcp://192.0.2.53:53") -> Rfc2136ZoneMutator:
    return Rfc2136ZoneMutator(address, "sync-key", KEY, timeout_seconds=3.0)


class TestServerAddress:
    def test_parse_tcp_address(self) -> None:
        assert parse_server_address("tcp://192.0.2.53:5353") == ("tcp", "192.0.2.53", 5353)

    def test_parse_udp_address_defaults_port(self) -> None:
        assert parse_server_address("udp://192.0.2.53") == ("udp", "192.0.2.53", 53)

    def test_parse_ipv6_address(self) -> None:
        assert parse_server_address("tcp://[2001:db8::53]:53") == ("tcp", "2001:db8::53", 53)

    @pytest.mark.parametrize(
        "value",
        ["192.0.2.53:53", "http://192.0.2.53:53", "tcp://ns.example.com:53", "tcp://192.0.2.53:x"],
    )
    def test_parse_rejects_invalid_addresses(self, value: str) -> None:
        with pytest.raises(ConfigurationError):
            parse_server_address(value)


class TestTsigKey:
    def test_read_tsig_key_returns_raw_bytes(self, tmp_path) -> None:
        key_file = tmp_path / "tsig.key"
        key_file.write_bytes(KEY)

        assert read_tsig_key(str(key_file)) == KEY

    def test_read_missing_key_is_configuration_error(self, tmp_path) -> None:
        with pytest.raises(ConfigurationError):
            read_tsig_key(str(tmp_path / "missing.key"))


class TestRfc2136Mutator:
    """Tests for the messages sent to the DNS server."""

    def test_create_sends_prerequisite_and_add(self) -> None:
        mutator = make_mutator()

        with patch("dns.query.tcp") as mock_tcp:
            mock_tcp.return_value = make_answer()

            mutator.create("web-1.internal.example.com", "10.0.0.2", 600, ZONE)

            message = mock_tcp.call_args.args[0]
            assert mock_tcp.call_args.args[1] == "192.0.2.53"
            assert mock_tcp.call_args.kwargs == {"timeout": 3.0, "port": 53}
            assert message.zone[0].name == dns.name.from_text(ZONE)
            assert len(message.prerequisite) == 1
            assert message.prerequisite[0].name == dns.name.from_text("web-1.internal.example.com")
            assert len(message.update) == 1
            rrset = message.update[0]
            assert rrset.rdtype == dns.rdatatype.A
            assert rrset.ttl == 600
            assert [r.to_text() for r in rrset] == ["10.0.0.2"]

    def test_create_ipv6_uses_aaaa(self) -> None:
        mutator = make_mutator()

        with patch("dns.query.tcp") as mock_tcp:
            mock_tcp.return_value = make_answer()

            mutator.create("web-1.internal.example.com", "2001:db8::2", 600, ZONE)

            assert mock_tcp.call_args.args[0].update[0].rdtype == dns.rdatatype.AAAA

    def test_create_rejected_raises_zone_rejected(self) -> None:
        mutator = make_mutator()

        with patch("dns.query.tcp") as mock_tcp:
            mock_tcp.return_value = make_answer(dns.rcode.YXRRSET)

            with pytest.raises(ZoneRejectedError) as excinfo:
                mutator.create("web-1.internal.example.com", "10.0.0.2", 600, ZONE)

            assert excinfo.value.rcode == "YXRRSET"

    def test_timeout_raises_zone_transport_error(self) -> None:
        mutator = make_mutator()

        with patch("dns.query.tcp") as mock_tcp:
            mock_tcp.side_effect = dns.exception.Timeout()

            with pytest.raises(ZoneTransportError):
                mutator.create("web-1.internal.example.com", "10.0.0.2", 600, ZONE)

    def test_socket_error_raises_zone_transport_error(self) -> None:
        mutator = make_mutator()

        with patch("dns.query.tcp") as mock_tcp:
            mock_tcp.side_effect = ConnectionRefusedError("refused")

            with pytest.raises(ZoneTransportError, match="refused"):
                mutator.delete("web-1.internal.example.com", ZONE)

    def test_udp_address_uses_udp_transport(self) -> None:
        mutator = make_mutator("udp://192.0.2.53:53")

        with patch("dns.query.udp") as mock_udp, patch("dns.query.tcp") as mock_tcp:
            mock_udp.return_value = make_answer()

            mutator.update("web-1.internal.example.com", "10.0.0.2", 600, ZONE)

            mock_udp.assert_called_once()
            mock_tcp.assert_not_called()

    def test_update_replaces_rrset(self) -> None:
        mutator = make_mutator()

        with patch("dns.query.tcp") as mock_tcp:
            mock_tcp.return_value = make_answer()

            mutator.update("web-1.internal.example.com", "10.0.0.3", 600, ZONE)

            message = mock_tcp.call_args.args[0]
            assert len(message.prerequisite) == 0
            rdtypes = {(r.deleting, r.rdtype) for r in message.update}
            assert (dns.rdataclass.ANY, dns.rdatatype.A) in rdtypes
            assert (None, dns.rdatatype.A) in rdtypes

    def test_delete_removes_address_rrsets_only(self) -> None:
        mutator = make_mutator()

        with patch("dns.query.tcp") as mock_tcp:
            mock_tcp.return_value = make_answer()

            mutator.delete("web-1.internal.example.com", ZONE)

            message = mock_tcp.call_args.args[0]
            assert sorted(r.rdtype for r in message.update) == [
                dns.rdatatype.A,
                dns.rdatatype.AAAA,
            ]

    def test_invalid_address_is_consistency_error(self) -> None:
        mutator = make_mutator()

        with patch("dns.query.tcp") as mock_tcp:
            with pytest.raises(DataConsistencyError):
                mutator.create("web-1.internal.example.com", "not-an-ip", 600, ZONE)

            mock_tcp.assert_not_called()


class TestZoneAdapter:
    """Tests for the create-or-update protocol."""

    def test_fqdn_joins_hostname_and_zone(self) -> None:
        adapter = ZoneAdapter(MagicMock(), "internal.example.com.")

        assert adapter.fqdn(Server(id=1, ip_address="10.0.0.1", hostname="web")) == (
            "web.internal.example.com"
        )

    def test_add_server_creates_record(self) -> None:
        mutator = MagicMock()
        adapter = ZoneAdapter(mutator, ZONE)
        server = Server(id=1, ip_address="10.0.0.1", hostname="web")

        assert adapter.add_server(server) is RecordAction.CREATED
        mutator.create.assert_called_once_with("web.internal.example.com", "10.0.0.1", 600, ZONE)
        mutator.update.assert_not_called()

    def test_add_server_updates_after_rejection(self) -> None:
        mutator = MagicMock()
        mutator.create.side_effect = ZoneRejectedError("exists", rcode="YXRRSET")
        events: List[SyncEvent] = []
        adapter = ZoneAdapter(mutator, ZONE, observer=events.append)
        server = Server(id=1, ip_address="10.0.0.1", hostname="web")

        assert adapter.add_server(server) is RecordAction.UPDATED
        mutator.create.assert_called_once()
        mutator.update.assert_called_once_with("web.internal.example.com", "10.0.0.1", 600, ZONE)
        assert len(events) == 1

    def test_add_server_transport_error_propagates(self) -> None:
        mutator = MagicMock()
        mutator.create.side_effect = ZoneTransportError("timeout")
        adapter = ZoneAdapter(mutator, ZONE)

        with pytest.raises(ZoneTransportError):
            adapter.add_server(Server(id=1, ip_address="10.0.0.1", hostname="web"))
        mutator.update.assert_not_called()

    def test_remove_server_deletes_fqdn(self) -> None:
        mutator = MagicMock()
        adapter = ZoneAdapter(mutator, ZONE)

        adapter.remove_server(Server(id=1, ip_address="10.0.0.1", hostname="web"))

        mutator.delete.assert_called_once_with("web.internal.example.com", ZONE)
