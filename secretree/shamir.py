"""Shamir's Secret Sharing over GF(2^8).

The field is Rijndael's finite field, GF(2)[X] / <X^8 + X^4 + X^3 + X + 1>.
Each byte of the secret gets its own random polynomial whose intercept is
that byte. Every share carries its x coordinate as its final byte.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Sequence

SHARE_OVERHEAD = 1
"""Number of bytes each share adds on top of the secret's length."""


def add(a: int, b: int) -> int:
    """Add (or subtract) two elements of GF(2^8)."""
    return (a ^ b) & 0xFF


def mult(a: int, b: int) -> int:
    """Multiply two elements of GF(2^8) in constant time."""
    a &= 0xFF
    b &= 0xFF
    accumulator = 0
    for bit in range(7, -1, -1):
        bit_of_b = (b >> bit) & 1
        a_or_zero = (-bit_of_b & a) & 0xFF
        zero_or_1b = (-(accumulator >> 7) & 0x1B) & 0xFF
        times_x = zero_or_1b ^ ((accumulator + accumulator) & 0xFF)
        accumulator = a_or_zero ^ times_x
    return accumulator


def inverse(a: int) -> int:
    """Return the multiplicative inverse of ``a``, or 0 when ``a`` is 0.

    Raises ``a`` to the 254th power, using Fermat's little theorem for the
    multiplicative group of the field.
    """
    b = mult(a, a)  # a^2
    c = mult(a, b)  # a^3
    b = mult(c, c)  # a^6
    b = mult(b, b)  # a^12
    c = mult(b, c)  # a^15
    b = mult(b, b)  # a^24
    b = mult(b, b)  # a^48
    b = mult(b, c)  # a^63
    b = mult(b, b)  # a^126
    b = mult(a, b)  # a^127
    return mult(b, b)  # a^254


def div(a: int, b: int) -> int:
    """Divide ``a`` by ``b`` in GF(2^8)."""
    if b & 0xFF == 0:
        raise ZeroDivisionError("divide by zero")
    return mult(a, inverse(b))


@dataclass
class Polynomial:
    """A polynomial over GF(2^8); ``coefficients[0]`` is the intercept."""

    coefficients: list[int]

    @classmethod
    def random(cls, intercept: int, degree: int) -> "Polynomial":
        """Build a polynomial of ``degree`` with random coefficients and the given intercept."""
        return cls([intercept & 0xFF, *secrets.token_bytes(degree)])

    def evaluate(self, x: int) -> int:
        """Evaluate the polynomial at ``x`` using Horner's method."""
        if x == 0:
            return self.coefficients[0]
        out = self.coefficients[-1]
        for coeff in reversed(self.coefficients[:-1]):
            out = add(mult(out, x), coeff)
        return out


def interpolate_polynomial(x_samples: Sequence[int], y_samples: Sequence[int], x: int) -> int:
    """Return the value at ``x`` of the Lagrange polynomial through the samples."""
    result = 0
    for i, (xi, yi) in enumerate(zip(x_samples, y_samples)):
        basis = 1
        for j, xj in enumerate(x_samples):
            if i == j:
                continue
            basis = mult(basis, div(add(x, xj), add(xi, xj)))
        result = add(result, mult(yi, basis))
    return result


def split(secret: bytes, parts: int, threshold: int) -> list[bytes]:
    """Split ``secret`` into ``parts`` shares, any ``threshold`` of which recover it.

    Each share is one byte longer than the secret: its last byte is the x
    coordinate of the share.
    """
    if parts < threshold:
        raise ValueError("parts cannot be less than threshold")
    if parts > 255:
        raise ValueError("parts cannot exceed 255")
    if threshold < 2:
        raise ValueError("threshold must be at least 2")
    if threshold > 255:
        raise ValueError("threshold cannot exceed 255")
    if not secret:
        raise ValueError("cannot split an empty secret")

    shares = [bytearray(len(secret) + SHARE_OVERHEAD) for _ in range(parts)]
    for x, share in enumerate(shares, start=1):
        share[-1] = x

    for idx, value in enumerate(bytes(secret)):
        polynomial = Polynomial.random(value, threshold - 1)
        for x, share in enumerate(shares, start=1):
            share[idx] = polynomial.evaluate(x)

    return [bytes(share) for share in shares]


def combine(parts: Sequence[bytes]) -> bytes:
    """Reconstruct a secret from at least ``threshold`` shares made by :func:`split`."""
    if parts is None or len(parts) < 2:
        raise ValueError("less than two parts cannot be used to reconstruct the secret")

    length = len(parts[0])
    if length < 2:
        raise ValueError("parts must be at least two bytes")
    if any(len(part) != length for part in parts[1:]):
        raise ValueError("all parts must be the same length")

    x_samples: list[int] = []
    seen: set[int] = set()
    for part in parts:
        x = part[-1]
        if x in seen:
            raise ValueError("duplicate part detected")
        seen.add(x)
        x_samples.append(x)

    return bytes(
        interpolate_polynomial(x_samples, [part[idx] for part in parts], 0)
        for idx in range(length - 1)
    )