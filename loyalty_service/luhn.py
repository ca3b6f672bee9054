"""Mod-10 (Luhn) check digit validation for order numbers."""
from typing import Union


def is_order_number(text: str) -> bool:
    """True when ``text`` is a non-empty string of ASCII digits."""
    return bool(text) and text.isascii() and text.isdigit()


def checksum(number: Union[int, str]) -> int:
    """Luhn sum of ``number``, doubling every second digit from the right."""
    number = int(number)
    total = 0
    position = 0
    while number > 0:
        digit = number % 10
        if position % 2 == 0:
            digit *= 2
            if digit > 9:
                digit = digit % 10 + digit // 10
        total += digit
        number //= 10
        position += 1
    return total % 10


def validate(number: Union[int, str]) -> bool:
    """Check the trailing digit of ``number`` against the rest."""
    number = int(number)
    return (number % 10 + checksum(number // 10)) % 10 == 0
