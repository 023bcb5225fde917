"""
Routing policy evaluation.

Decides, per chat request, whether the tenant's own model (BYOLLM) or the
platform model (AEGIS) answers, and builds the request that is forwarded to
the RAG backend. The decision is a lookup over three inputs: the tenant's
policy, whether a configuration exists, and whether the client asked for
BYOLLM.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from apps.llmconfig.crypto import decrypt as vault_decrypt
from apps.llmconfig.models import LLMConfiguration, RoutingPolicy

logger = logging.getLogger(__name__)

AEGIS_PROVIDER = 'aegis'
MAX_QUERY_LENGTH = 4000
HISTORY_ROLES = ('user', 'assistant', 'system')


class ChatValidationError(Exception):
    """Raised when a chat request body is malformed."""
    pass


class Route(str, Enum):
    AEGIS = 'aegis'
    BYOLLM = 'byollm'


class ModelSource(str, Enum):
    """Where the forwarded llmModel comes from on a BYOLLM route."""
    STORED = 'stored'
    CLIENT_OVERRIDE = 'client_override'


# Policy key used when the tenant has no configuration at all
NO_POLICY = None

# (policy, config present, client requested BYOLLM) -> (route, model source)
DECISION_TABLE = {
    (NO_POLICY, False, False): (Route.AEGIS, None),
    (NO_POLICY, False, True): (Route.AEGIS, None),
    (RoutingPolicy.AEGIS_ONLY.value, True, False): (Route.AEGIS, None),
    (RoutingPolicy.AEGIS_ONLY.value, True, True): (Route.AEGIS, None),
    (RoutingPolicy.BYOLLM_ONLY.value, True, False): (Route.BYOLLM, ModelSource.STORED),
    (RoutingPolicy.BYOLLM_ONLY.value, True, True): (Route.BYOLLM, ModelSource.STORED),
    (RoutingPolicy.CHOICE.value, True, True): (Route.BYOLLM, ModelSource.CLIENT_OVERRIDE),
    (RoutingPolicy.CHOICE.value, True, False): (Route.AEGIS, None),
}


@dataclass
class HistoryMessage:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {'role': self.role, 'content': self.content}


@dataclass
class ChatRequest:
    """A client chat request after validation."""
    query: str
    history: List[HistoryMessage] = field(default_factory=list)
    llm_provider: Optional[str] = None
    llm_model: Optional[str] = None
    privilege_mode: bool = False
    stream: bool = True

    @property
    def wants_byollm(self) -> bool:
        """The client asked for its own model rather than the platform one."""
        return bool(self.llm_provider) and self.llm_provider.lower() != AEGIS_PROVIDER

    @classmethod
    def from_body(cls, body: Any) -> 'ChatRequest':
        """
        Validate a decoded JSON body.

        Raises:
            ChatValidationError: If a field is missing or has the wrong type
        """
        if not isinstance(body, dict):
            raise ChatValidationError("Request body must be a JSON object")

        query = body.get('query')
        if not isinstance(query, str) or not query.strip():
            raise ChatValidationError("Query is required")
        query = query.strip()
        if len(query) > MAX_QUERY_LENGTH:
            raise ChatValidationError(f"Query too long. Maximum {MAX_QUERY_LENGTH} characters.")

        raw_history = body.get('history') or []
        if not isinstance(raw_history, list):
            raise ChatValidationError("History must be a list")
        history = []
        for item in raw_history:
            if (
                not isinstance(item, dict)
                or item.get('role') not in HISTORY_ROLES
                or not isinstance(item.get('content'), str)
            ):
                raise ChatValidationError("History entries need a role and string content")
            history.append(HistoryMessage(role=item['role'], content=item['content']))

        for name in ('llmProvider', 'llmModel'):
            value = body.get(name)
            if value is not None and not isinstance(value, str):
                raise ChatValidationError(f"{name} must be a string")

        stream = body.get('stream', True)
        privilege_mode = body.get('privilegeMode', False)
        if not isinstance(stream, bool) or not isinstance(privilege_mode, bool):
            raise ChatValidationError("stream and privilegeMode must be booleans")

        return cls(
            query=query,
            history=history,
            llm_provider=body.get('llmProvider') or None,
            llm_model=body.get('llmModel') or None,
            privilege_mode=privilege_mode,
            stream=stream,
        )


@dataclass
class EffectiveRequest:
    """
    The body forwarded to the RAG backend.

    BYOLLM fields are only serialized when present. llm_api_key is
    plaintext and must never reach a log line or a client response.
    """
    query: str
    history: List[HistoryMessage]
    privilege_mode: bool
    stream: bool
    route: Route = Route.AEGIS
    llm_provider: Optional[str] = None
    llm_model: Optional[str] = None
    llm_api_key: Optional[str] = field(default=None, repr=False)
    llm_base_url: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            'query': self.query,
            'history': [m.to_dict() for m in self.history],
            'privilegeMode': self.privilege_mode,
            'stream': self.stream,
        }
        optional = {
            'llmProvider': self.llm_provider,
            'llmModel': self.llm_model,
            'llmApiKey': self.llm_api_key,
            'llmBaseUrl': self.llm_base_url,
        }
        payload.update({k: v for k, v in optional.items() if v})
        return payload


def decide_route(policy: Optional[str], config_present: bool, wants_byollm: bool):
    """
    Look up the routing outcome.

    A policy without a configuration cannot occur for stored rows, so any
    combination missing from the table falls back to AEGIS.
    """
    key = (policy if config_present else NO_POLICY, config_present, wants_byollm)
    return DECISION_TABLE.get(key, (Route.AEGIS, None))


def build_effective_request(
    config: Optional[LLMConfiguration],
    client_request: ChatRequest,
    decrypt: Callable[[str], str] = vault_decrypt,
) -> EffectiveRequest:
    """
    Compute what is forwarded to the RAG backend.

    Args:
        config: The tenant's stored configuration, or None
        client_request: The validated client request
        decrypt: Vault decrypt function (only called on a BYOLLM route)

    Returns:
        EffectiveRequest with BYOLLM fields present only on a BYOLLM route

    Raises:
        CredentialFormatError: If the stored ciphertext cannot be decrypted
    """
    route, model_source = decide_route(
        config.policy if config else None,
        config is not None,
        client_request.wants_byollm,
    )

    effective = EffectiveRequest(
        query=client_request.query,
        history=list(client_request.history),
        privilege_mode=client_request.privilege_mode,
        stream=client_request.stream,
        route=route,
    )
    if route is Route.AEGIS:
        return effective

    model = config.default_model
    if model_source is ModelSource.CLIENT_OVERRIDE and client_request.llm_model:
        model = client_request.llm_model

    effective.llm_api_key = decrypt(config.api_key_encrypted)
    effective.llm_provider = config.provider
    effective.llm_model = model or None
    effective.llm_base_url = config.base_url or None
    return effective
