"""
Matrix user id parsing.
"""
import re

from matrix_puppet.core.errors import InvalidIdentifierError
from matrix_puppet.core.types import ParsedMxid

# The first colon splits localpart from domain; the domain keeps any further
# colons (ports) as-is.
MXID_PATTERN = re.compile(r"^([^:]+):(.+)$")


def parse_mxid(user_id: str) -> ParsedMxid:
    """
    Split a Matrix user id such as ``@alice:example.org:8448``.

    Raises:
        InvalidIdentifierError: if the value is not of the form localpart:domain
    """
    if not isinstance(user_id, str):
        raise InvalidIdentifierError(user_id)
    match = MXID_PATTERN.match(user_id)
    if match is None:
        raise InvalidIdentifierError(user_id)
    return ParsedMxid(localpart=match.group(1), domain=match.group(2))


def is_valid_mxid(user_id: str) -> bool:
    try:
        parse_mxid(user_id)
    except InvalidIdentifierError:
        return False
    return True
