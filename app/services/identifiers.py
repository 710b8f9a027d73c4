import secrets
import string
import time
from typing import Callable, Optional

# no 0/O, 1/I/L: codes get read out over the phone
ORDER_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
REFERENCE_ALPHABET = string.ascii_uppercase + string.digits

ORDER_CODE_PREFIX = "ORD"
PAYMENT_REFERENCE_PREFIX = "PAY"

INVOICE_NUMBER_LENGTH = 10
INVOICE_TIME_DIGITS = 6


class IdentifierGenerator:
    """
    Human-facing identifiers.

    order code      ORD-XXXX-XXXX   (random, restricted alphabet)
    invoice number  10 digits       (6 from the clock + 4 random)
    reference       PAY-<ms>-XXXXXXXX

    Uniqueness is guaranteed by the database; callers retry on collision.
    """

    def __init__(
        self,
        rng: Optional[secrets.SystemRandom] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.rng = rng or secrets.SystemRandom()
        self.clock = clock

    def _pick(self, alphabet: str, length: int) -> str:
        return "".join(self.rng.choice(alphabet) for _ in range(length))

    def order_code(self) -> str:
        return f"{ORDER_CODE_PREFIX}-{self._pick(ORDER_CODE_ALPHABET, 4)}-{self._pick(ORDER_CODE_ALPHABET, 4)}"

    def invoice_number(self) -> str:
        seconds = int(self.clock())
        prefix = str(seconds % 10 ** INVOICE_TIME_DIGITS).zfill(INVOICE_TIME_DIGITS)
        suffix_len = INVOICE_NUMBER_LENGTH - INVOICE_TIME_DIGITS
        suffix = str(self.rng.randrange(10 ** suffix_len)).zfill(suffix_len)
        return prefix + suffix

    def payment_reference(self) -> str:
        millis = int(self.clock() * 1000)
        return f"{PAYMENT_REFERENCE_PREFIX}-{millis}-{self._pick(REFERENCE_ALPHABET, 8)}"


def is_order_code(value: str) -> bool:
    parts = value.split("-")
    return (
        len(parts) == 3
        and parts[0] == ORDER_CODE_PREFIX
        and all(len(p) == 4 and all(c in ORDER_CODE_ALPHABET for c in p) for p in parts[1:])
    )


def is_invoice_number(value: str) -> bool:
    return len(value) == INVOICE_NUMBER_LENGTH and value.isdigit()
