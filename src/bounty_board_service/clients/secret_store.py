"""Resolution of opaque wallet secret references."""

from __future__ import annotations

import os
import re
from typing import Protocol

_NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]+")


class SecretStore(Protocol):
    def resolve(self, reference: str) -> str | None: ...


class EnvSecretStore:
    """
    Resolve secret references from environment variables.

    A reference ``inst-42/escrow`` with prefix ``BOUNTY_`` is looked up as
    ``BOUNTY_INST_42_ESCROW``.
    """

    def __init__(self, prefix: str) -> None:
        self._prefix = prefix

    def variable_name(self, reference: str) -> str:
        return self._prefix + _NON_ALNUM_RE.sub("_", reference).strip("_").upper()

    def resolve(self, reference: str) -> str | None:
        value = os.environ.get(self.variable_name(reference))
        return value or None
