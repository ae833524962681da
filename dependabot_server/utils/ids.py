"""Identifier generation for jobs and repositories."""

from __future__ import annotations

import itertools
import secrets
import string
import time
import uuid

BASE62_ALPHABET = string.digits + string.ascii_letters

_counter = itertools.count()


def generate_auth_key(length: int = 32) -> str:
    """Random base62 token handed to a single job's updater container."""
    return "".join(secrets.choice(BASE62_ALPHABET) for _ in range(length))


def generate_job_id() -> str:
    """Sortable job id safe for cloud resource names.

    Alphanumeric plus single dashes, starts with a letter and stays well under
    the 32 character limit once prefixed with ``dependabot-``.
    """
    sequence = time.time_ns() // 1_000_000 * 100 + next(_counter) % 100
    return f"job-{sequence}"


def generate_repository_id() -> str:
    return uuid.uuid4().hex
