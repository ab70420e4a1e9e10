"""
ntlm-proxy Core Module

Provides foundational types and abstractions used across the relay.

Components:
- types: ProxyConfig, Timeouts, Headers, request/exchange records
- state_machine: Base state machine with invariant checking
- config: Layered configuration loading and TLS context setup
- logging: structlog configuration
- exceptions: Custom exception types
"""

from ntlmproxy.core.types import (
    Headers,
    InboundRequest,
    ProxyConfig,
    RequestKind,
    Timeouts,
    UpstreamExchange,
    merge_headers,
)
from ntlmproxy.core.state_machine import StateMachineBase, Transition
from ntlmproxy.core.exceptions import (
    ConfigValidationError,
    InvariantViolation,
    MalformedRequestError,
    NTLMProxyError,
    ProtocolError,
    RequestBodyTooLarge,
    StateError,
    UpstreamAuthFailure,
    UpstreamConnectError,
)

__all__ = [
    # Types
    "Headers",
    "InboundRequest",
    "ProxyConfig",
    "RequestKind",
    "Timeouts",
    "UpstreamExchange",
    "merge_headers",
    # State Machine
    "StateMachineBase",
    "Transition",
    # Exceptions
    "NTLMProxyError",
    "ConfigValidationError",
    "UpstreamConnectError",
    "ProtocolError",
    "MalformedRequestError",
    "UpstreamAuthFailure",
    "RequestBodyTooLarge",
    "StateError",
    "InvariantViolation",
]
