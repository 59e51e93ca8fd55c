from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mcp_spec_auth.central_auth.service import CentralAuthService
    from mcp_spec_auth.utils.environment import BrokerConfig


@dataclass(frozen=True)
class MainAppContext:
    """
    Context holding the broker configuration and the authorization service
    created at server startup. Tools read the authenticated identity from
    the request state; the service is used for operations such as logout.
    """

    config: BrokerConfig
    service: CentralAuthService
