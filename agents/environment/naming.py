"""
Resource naming: branch name -> environment id.

The id is a pure function of the branch name (no salt, no clock) so the
delete workflow can re-derive it without any stored state. The result is a
valid RFC 1123 label: lower-case alphanumerics and '-', at most 63 chars.
"""

from __future__ import annotations

import hashlib
import logging
import re

from config.settings import HASH_SUFFIX_LENGTH, MAX_ENVIRONMENT_ID_LENGTH
from framework.errors import InvalidNameError

logger = logging.getLogger("envops.naming")

_INVALID_RUN = re.compile(r"[^a-z0-9]+")


def resolve(branch_name: str, max_length: int = MAX_ENVIRONMENT_ID_LENGTH) -> str:
    """
    Derive the environment id for a branch.

    feature/user-auth -> feature-user-auth. Names longer than max_length are
    truncated and suffixed with the first 8 hex chars of sha256(branch_name),
    which keeps long names that share a prefix distinct.
    """
    if max_length <= HASH_SUFFIX_LENGTH + 1:
        raise ValueError(f"max_length must exceed {HASH_SUFFIX_LENGTH + 1}, got {max_length}")

    sanitized = _INVALID_RUN.sub("-", (branch_name or "").lower()).strip("-")
    if not sanitized:
        raise InvalidNameError(f"branch name {branch_name!r} has no usable characters")

    if len(sanitized) <= max_length:
        return sanitized

    digest = hashlib.sha256(branch_name.encode("utf-8")).hexdigest()[:HASH_SUFFIX_LENGTH]
    head = sanitized[: max_length - HASH_SUFFIX_LENGTH - 1].rstrip("-")
    environment_id = f"{head}-{digest}"
    logger.debug(f"Truncated {branch_name!r} to {environment_id}")
    return environment_id
