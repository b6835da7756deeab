"""IPv4 address and CIDR range arithmetic.

Addresses are plain 32-bit unsigned integers wrapped in an immutable
value type. ``CIDRRange`` trusts its constructor arguments literally;
use ``CIDRRange.from_ip`` to derive the network containing an arbitrary
address.
"""

from dataclasses import dataclass

from fleetfw.core.exceptions import ValidationError


ADDRESS_BITS = 32
MAX_ADDRESS = 0xFFFFFFFF


@dataclass(frozen=True, order=True)
class IPv4Address:
    """A 32-bit IPv4 address."""
    value: int

    def __post_init__(self) -> None:
        if not 0 <= self.value <= MAX_ADDRESS:
            raise ValidationError(f"IPv4 address out of range: {self.value}")

    @classmethod
    def parse(cls, text: str) -> "IPv4Address":
        """Parse dotted-decimal notation.

        Raises:
            ValidationError: If the text is not a dotted-decimal address
        """
        parts = text.strip().split(".")
        if len(parts) != 4 or not all(p.isdigit() for p in parts):
            raise ValidationError(
                f"Invalid IPv4 address: {text}",
                hint="Use format like 10.0.0.5",
            )

        value = 0
        for part in parts:
            octet = int(part)
            if octet > 255:
                raise ValidationError(f"Invalid IPv4 address: {text}")
            value = (value << 8) | octet
        return cls(value)

    def next(self) -> "IPv4Address":
        return IPv4Address(self.value + 1)

    def prev(self) -> "IPv4Address":
        return IPv4Address(self.value - 1)

    def octets(self) -> tuple[int, int, int, int]:
        v = self.value
        return ((v >> 24) & 0xFF, (v >> 16) & 0xFF, (v >> 8) & 0xFF, v & 0xFF)

    def __str__(self) -> str:
        return ".".join(str(o) for o in self.octets())


def _mask_bits(length: int) -> int:
    if length == 0:
        return 0
    return (MAX_ADDRESS << (ADDRESS_BITS - length)) & MAX_ADDRESS


@dataclass(frozen=True)
class CIDRRange:
    """An IPv4 network given by its (already masked) address and prefix length."""
    net_address: IPv4Address
    length: int

    def __post_init__(self) -> None:
        if not 0 <= self.length <= ADDRESS_BITS:
            raise ValidationError(
                f"Invalid prefix length: {self.length}",
                hint="Prefix length must be between 0 and 32",
            )

    @classmethod
    def from_ip(cls, ip: IPv4Address, length: int) -> "CIDRRange":
        """Network of ``ip`` with the given prefix length (host bits cleared)."""
        shift = ADDRESS_BITS - length
        if shift >= ADDRESS_BITS:
            return cls(IPv4Address(0), length)
        return cls(IPv4Address((ip.value >> shift) << shift), length)

    @classmethod
    def parse(cls, text: str) -> "CIDRRange":
        """Parse "a.b.c.d/len" or a bare address (treated as /32).

        Host bits are truncated.
        """
        text = text.strip()
        if "/" in text:
            address, _, length_text = text.partition("/")
            if not length_text.isdigit():
                raise ValidationError(f"Invalid CIDR notation: {text}")
            length = int(length_text)
        else:
            address, length = text, ADDRESS_BITS

        if length > ADDRESS_BITS:
            raise ValidationError(f"Invalid CIDR notation: {text}")
        return cls.from_ip(IPv4Address.parse(address), length)

    @classmethod
    def from_address_and_subnet_mask(cls, address: IPv4Address, mask: str) -> "CIDRRange":
        """Build a range from an address and a dotted-decimal mask.

        The prefix length is the number of set bits in the mask octets.
        """
        length = sum(bin(octet).count("1") for octet in IPv4Address.parse(mask).octets())
        return cls.from_ip(address, length)

    @property
    def subnet_mask(self) -> IPv4Address:
        return IPv4Address(_mask_bits(self.length))

    @property
    def broadcast_address(self) -> IPv4Address:
        return IPv4Address(self.net_address.value | (~_mask_bits(self.length) & MAX_ADDRESS))

    def generate_subnet_mask(self) -> str:
        """Dotted-decimal mask built octet by octet."""
        octets = []
        remaining = self.length
        for _ in range(4):
            bits = min(8, max(remaining, 0))
            octets.append((0xFF << (8 - bits)) & 0xFF)
            remaining -= 8
        return ".".join(str(o) for o in octets)

    def includes(self, address: IPv4Address) -> bool:
        return (address.value & _mask_bits(self.length)) == self.net_address.value

    def overlaps(self, other: "CIDRRange") -> bool:
        shorter = min(self.length, other.length)
        mask = _mask_bits(shorter)
        return (self.net_address.value & mask) == (other.net_address.value & mask)

    def __str__(self) -> str:
        return f"{self.net_address}/{self.length}"
