"""Outgoing magic-link delivery.

Email delivery is handled outside this service; the default sender only
records the link so it can be picked up from the logs in development.
"""

import logging
from typing import Callable

logger = logging.getLogger(__name__)

MagicLinkSender = Callable[[str, str, str, str], None]


def log_magic_link(email: str, verification_url: str, link_type: str, auth_type: str) -> None:
    logger.info('Magic %s link for %s (%s): %s', link_type, email, auth_type, verification_url)
