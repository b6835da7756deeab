"""Unit tests for the validation module."""

import pytest

from fleetfw.core.validation import (
    ANY,
    MAX_IDENTIFIER_LENGTH,
    validate_address_list,
    validate_cidr,
    validate_identifier,
    validate_ipv4,
    validate_port,
    validate_port_ranges,
    validate_priority,
)
from fleetfw.core.exceptions import ValidationError


class TestValidateIdentifier:
    """Tests for host and zone identifier validation."""

    def test_valid_identifier(self):
        """Valid identifiers should pass."""
        assert validate_identifier("node1") == "node1"
        assert validate_identifier("edge-01.dc2") == "edge-01.dc2"
        assert validate_identifier("vnet_app") == "vnet_app"

    def test_empty_identifier(self):
        """Empty identifiers should fail."""
        with pytest.raises(ValidationError) as exc:
            validate_identifier("", "host id")
        assert "Empty host id" in str(exc.value)

    def test_too_long_identifier(self):
        """Identifiers exceeding 63 chars should fail."""
        with pytest.raises(ValidationError) as exc:
            validate_identifier("a" * (MAX_IDENTIFIER_LENGTH + 1))
        assert "too long" in str(exc.value)

    def test_max_length_identifier(self):
        """Identifiers at exactly 63 chars should pass."""
        name = "a" * MAX_IDENTIFIER_LENGTH
        assert validate_identifier(name) == name

    def test_invalid_characters(self):
        """Identifiers with spaces or shell characters should fail."""
        for name in ["-node", "my node", "node;rm", "node$1", "node/1"]:
            with pytest.raises(ValidationError):
                validate_identifier(name)


class TestValidateAddresses:
    """Tests for IPv4 address and CIDR validation."""

    def test_valid_ipv4(self):
        """Dotted-decimal addresses should pass."""
        assert validate_ipv4(" 10.0.0.5 ") == "10.0.0.5"

    def test_invalid_ipv4(self):
        """Ranges and garbage are not addresses."""
        for value in ["10.0.0.0/24", "256.1.1.1", "host"]:
            with pytest.raises(ValidationError):
                validate_ipv4(value)

    def test_valid_cidr(self):
        """CIDR ranges and bare addresses should pass."""
        assert validate_cidr("10.0.0.0/24") == "10.0.0.0/24"
        assert validate_cidr("10.0.0.5/24") == "10.0.0.5/24"
        assert validate_cidr("192.168.1.1") == "192.168.1.1"
        assert validate_cidr("0.0.0.0/0") == "0.0.0.0/0"

    def test_invalid_cidr(self):
        """Malformed CIDR notations should fail."""
        for value in ["invalid", "256.0.0.0/8", "10.0.0.0/33", "2001:db8::/32"]:
            with pytest.raises(ValidationError):
                validate_cidr(value)

    @pytest.mark.parametrize("value", ["10.0.0.0/255.255.255.0", "10.0.0.0/0.0.0.255", "10.0.0.0/", "10.0.0.0/ 24"])
    def test_prefix_must_be_a_length(self, value):
        """Netmask and hostmask forms are not CIDR notation."""
        with pytest.raises(ValidationError):
            validate_cidr(value)

    def test_address_list(self):
        """Comma lists and Any should pass."""
        assert validate_address_list(ANY) == ANY
        assert validate_address_list("10.0.0.0/8, 192.168.0.1") == "10.0.0.0/8, 192.168.0.1"
        assert validate_address_list("10.0.0.0/8,Any") == "10.0.0.0/8,Any"
        with pytest.raises(ValidationError):
            validate_address_list("10.0.0.0/8,any")


class TestValidatePorts:
    """Tests for port and port range validation."""

    def test_valid_ports(self):
        """Valid port numbers should pass."""
        assert validate_port(1) == 1
        assert validate_port(65535) == 65535

    def test_invalid_ports(self):
        """Out of range port numbers should fail."""
        for value in [0, 65536, -1]:
            with pytest.raises(ValidationError):
                validate_port(value)

    def test_port_ranges(self):
        """Single ports, ranges and comma lists should pass."""
        assert validate_port_ranges(ANY) == ANY
        assert validate_port_ranges("22") == "22"
        assert validate_port_ranges("80,443,8080-8088") == "80,443,8080-8088"
        assert validate_port_ranges("22,Any") == "22,Any"

    @pytest.mark.parametrize("value", ["", "any", "1-2-3", "80-", "443-80", "0-10", "http"])
    def test_invalid_port_ranges(self, value):
        """Malformed port lists should fail."""
        with pytest.raises(ValidationError):
            validate_port_ranges(value)


class TestValidatePriority:
    """Tests for rule priority validation."""

    def test_bounds(self):
        """0 through 65534 should pass."""
        assert validate_priority(0) == 0
        assert validate_priority(65534) == 65534

    def test_reserved(self):
        """65535 is reserved for the implicit rule."""
        with pytest.raises(ValidationError) as exc:
            validate_priority(65535)
        assert "reserved" in exc.value.hint
