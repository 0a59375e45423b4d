"""
Invite Code Authority

Issues the short join codes diners type in (or scan) to reach a group order.

Codes are drawn from a 32-symbol alphabet without the look-alike characters
0/O and 1/I. At the default length of 8 the code space holds 32^8 (about
1.1e12) values, so guessing a live code within the longest allowed TTL is
impractical.

Codes are displayed as ``ABCD-EFGH``; ``normalize`` accepts that form, lower
case, and stray whitespace.
"""

import logging
import secrets
from typing import Callable

from group_ordering.core.exceptions import CodeGenerationFailed

logger = logging.getLogger(__name__)

INVITE_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


class InviteCodeAuthority:
    """
    Generates and format-checks invite codes.

    Uniqueness is delegated to the caller through ``is_taken``: the registry
    knows which codes can currently resolve, this class only knows their
    shape.

    Example:
        >>> authority = InviteCodeAuthority(length=8)
        >>> code = authority.generate(is_taken=lambda c: False)
        >>> authority.validate(code)
        True
    """

    def __init__(
        self,
        length: int = 8,
        max_attempts: int = 5,
        alphabet: str = INVITE_CODE_ALPHABET,
    ):
        if length < 1:
            raise ValueError("Invite code length must be positive")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.length = length
        self.max_attempts = max_attempts
        self.alphabet = alphabet
        self._symbols = frozenset(alphabet)

    @property
    def code_space(self) -> int:
        """Number of distinct codes this authority can produce."""
        return len(self.alphabet) ** self.length

    def _draw(self) -> str:
        return "".join(secrets.choice(self.alphabet) for _ in range(self.length))

    def generate(self, is_taken: Callable[[str], bool]) -> str:
        """
        Produce a code that ``is_taken`` reports as free.

        Args:
            is_taken: Returns True when a code currently resolves to a
                non-terminal session

        Returns:
            str: A normalized invite code

        Raises:
            CodeGenerationFailed: If every attempt collided
        """
        for attempt in range(1, self.max_attempts + 1):
            code = self._draw()
            if not is_taken(code):
                return code
            logger.warning(f"Invite code collision (attempt {attempt}/{self.max_attempts})")

        logger.error(f"Invite code generation failed after {self.max_attempts} attempts")
        raise CodeGenerationFailed()

    @staticmethod
    def normalize(code: str) -> str:
        """Upper-case a code and strip separators and whitespace."""
        return "".join(code.split()).replace("-", "").upper()

    def validate(self, code) -> bool:
        """Pure format check; never touches the registry."""
        if not isinstance(code, str):
            return False
        normalized = self.normalize(code)
        return len(normalized) == self.length and set(normalized) <= self._symbols

    def format_for_display(self, code: str) -> str:
        """Split a code in two halves for display, e.g. ``ABCD-EFGH``."""
        normalized = self.normalize(code)
        half = len(normalized) // 2
        return f"{normalized[:half]}-{normalized[half:]}"
