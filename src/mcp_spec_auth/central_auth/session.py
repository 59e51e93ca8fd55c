"""Assembly of the per-user identity context."""

from __future__ import annotations

from typing import Any, Mapping

from mcp_spec_auth.central_auth.errors import MissingSubjectClaim
from mcp_spec_auth.central_auth.models import SessionProps, TokenSet


def build_session_props(claims: Mapping[str, Any], token_set: TokenSet) -> SessionProps:
    """Return :class:`SessionProps` for verified *claims* and *token_set*.

    ``sub`` is the durable per-user key for all downstream data isolation, so a
    missing or blank subject is an upstream contract violation.
    """
    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub.strip():
        raise MissingSubjectClaim("verified identity token has no usable 'sub'")
    return SessionProps(claims=dict(claims), token_set=token_set)
