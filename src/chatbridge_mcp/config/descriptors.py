"""
Server descriptors and the versioned export bundle used to move them around.
"""

import json
import time
import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Type, TypeVar, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from chatbridge_mcp.config.settings import MCPSettings, TransportKind, parse_transport_kind
from chatbridge_mcp.errors import ValidationError
from chatbridge_mcp.utils.logging import get_logger

if TYPE_CHECKING:
    from chatbridge_mcp.mcp.connection_manager import ConnectionManager

logger = get_logger(__name__)

EXPORT_FORMAT_VERSION = "1.0.0"

M = TypeVar("M", bound=BaseModel)


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def validate_model(model_cls: Type[M], payload: Any) -> M:
    """
    Validate a payload into a model, raising the framework's ValidationError.
    """
    if isinstance(payload, model_cls):
        return payload
    if not isinstance(payload, Mapping):
        raise ValidationError(
            f"Expected an object for {model_cls.__name__}, got {type(payload).__name__}"
        )
    try:
        return model_cls.model_validate(dict(payload))
    except pydantic.ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or model_cls.__name__}: {err['msg']}"
            for err in exc.errors()
        )
        raise ValidationError(f"Invalid {model_cls.__name__}: {details}") from exc


class ServerDescriptorInput(BaseModel):
    """
    Caller-supplied description of a backend server, without identity or
    timestamps. This is the shape used in forms and export bundles.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    name: str
    transport: TransportKind = Field(
        default=TransportKind.SUBPROCESS,
        validation_alias=pydantic.AliasChoices("transport", "type"),
    )
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Optional[Dict[str, str]] = None
    url: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    auto_connect: bool = False
    read_timeout_seconds: Optional[float] = None

    @field_validator("transport", mode="before")
    @classmethod
    def normalize_transport(cls, value: Any) -> Any:
        return parse_transport_kind(value)

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name must not be blank")
        return value

    @model_validator(mode="after")
    def check_transport_parameters(self):
        if self.transport == TransportKind.SUBPROCESS:
            if not self.command or not self.command.strip():
                raise ValueError("command is required for subprocess transport")
        elif self.transport == TransportKind.HTTP_STREAM:
            if not self.url:
                raise ValueError("url is required for http-stream transport")
            if not self.url.startswith(("http://", "https://")):
                raise ValueError(f"url must be an http(s) URL: {self.url}")
        return self

    def to_input(self) -> "ServerDescriptorInput":
        return ServerDescriptorInput.model_validate(
            self.model_dump(include=set(ServerDescriptorInput.model_fields))
        )


class ServerDescriptor(ServerDescriptorInput):
    """
    A registered backend server. Immutable; updates produce a new instance.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)

    @field_validator("id")
    @classmethod
    def id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("id must not be blank")
        return value

    @classmethod
    def from_settings(cls, server_id: str, settings: Any) -> "ServerDescriptor":
        """Build a descriptor from an `mcp.servers` config entry."""
        data = settings.model_dump()
        data["name"] = data.get("name") or server_id
        return validate_model(cls, {**data, "id": server_id})


def _to_field_names(changes: Mapping[str, Any]) -> Dict[str, Any]:
    """Rewrite camelCase keys to descriptor field names."""
    names = {to_camel(name): name for name in ServerDescriptor.model_fields}
    names["type"] = "transport"
    return {names.get(key, key): value for key, value in changes.items()}


class ExportBundle(BaseModel):
    """Versioned bundle of descriptors for bulk import and export."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    version: str = EXPORT_FORMAT_VERSION
    servers: List[ServerDescriptorInput] = Field(default_factory=list)
    exported_at: int = Field(default_factory=now_ms)


class DescriptorStore:
    """
    In-memory table of server descriptors, in registration order.

    Descriptors may only be changed while their server is disconnected, and
    deleting one disconnects it first.
    """

    def __init__(self, connection_manager: Optional["ConnectionManager"] = None):
        self.connection_manager = connection_manager
        self._descriptors: Dict[str, ServerDescriptor] = {}

    @classmethod
    def from_settings(
        cls,
        settings: MCPSettings,
        connection_manager: Optional["ConnectionManager"] = None,
    ) -> "DescriptorStore":
        store = cls(connection_manager)
        for server_id, server_settings in settings.servers.items():
            store._descriptors[server_id] = ServerDescriptor.from_settings(
                server_id, server_settings
            )
        return store

    def __len__(self) -> int:
        return len(self._descriptors)

    def __contains__(self, server_id: str) -> bool:
        return server_id in self._descriptors

    def get(self, server_id: str) -> Optional[ServerDescriptor]:
        return self._descriptors.get(server_id)

    def list_descriptors(self) -> List[ServerDescriptor]:
        return list(self._descriptors.values())

    def add(
        self,
        data: Union[ServerDescriptorInput, Mapping[str, Any]],
        server_id: Optional[str] = None,
    ) -> ServerDescriptor:
        """
        Register a new descriptor with a fresh identifier and timestamps.
        """
        descriptor_input = validate_model(ServerDescriptorInput, data)
        fields = descriptor_input.model_dump(include=set(ServerDescriptorInput.model_fields))
        if server_id is not None:
            fields["id"] = server_id
        descriptor = validate_model(ServerDescriptor, fields)

        if descriptor.id in self._descriptors:
            raise ValidationError(f"Server '{descriptor.id}' is already registered")

        self._descriptors[descriptor.id] = descriptor
        logger.debug(f"{descriptor.id}: Registered server descriptor '{descriptor.name}'")
        return descriptor

    def update(self, server_id: str, changes: Mapping[str, Any]) -> ServerDescriptor:
        """
        Apply changes to a descriptor. Only allowed while it is disconnected.
        """
        current = self._descriptors.get(server_id)
        if current is None:
            raise ValidationError(f"Server '{server_id}' is not registered")

        if self.connection_manager and self.connection_manager.has_session(server_id):
            raise ValidationError(
                f"Server '{server_id}' must be disconnected before it can be updated"
            )

        changes = _to_field_names(changes)
        forbidden = {"id", "created_at", "updated_at"} & set(changes)
        if forbidden:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(forbidden))}")

        merged = {**current.model_dump(), **changes, "updated_at": now_ms()}
        updated = validate_model(ServerDescriptor, merged)
        self._descriptors[server_id] = updated
        return updated

    async def delete(self, server_id: str) -> bool:
        """
        Remove a descriptor, disconnecting its server first.

        Returns:
            True if a descriptor was removed.
        """
        if server_id not in self._descriptors:
            return False

        if self.connection_manager:
            await self.connection_manager.disconnect(server_id)

        del self._descriptors[server_id]
        logger.debug(f"{server_id}: Removed server descriptor")
        return True

    def export_bundle(self) -> ExportBundle:
        return ExportBundle(
            servers=[descriptor.to_input() for descriptor in self._descriptors.values()]
        )

    def import_bundle(
        self, bundle: Union[ExportBundle, Mapping[str, Any]]
    ) -> List[ServerDescriptor]:
        """
        Append every descriptor of a bundle with fresh ids and timestamps.

        The bundle is validated as a whole before anything is added.
        """
        bundle = validate_model(ExportBundle, bundle)
        if bundle.version.split(".")[0] != EXPORT_FORMAT_VERSION.split(".")[0]:
            raise ValidationError(f"Unsupported export format version: {bundle.version}")

        imported = [self.add(server) for server in bundle.servers]
        logger.info(f"Imported {len(imported)} server descriptor(s)")
        return imported

    def export_json(self, indent: Optional[int] = 2) -> str:
        return self.export_bundle().model_dump_json(by_alias=True, indent=indent)

    def import_json(self, text: str) -> List[ServerDescriptor]:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Export bundle is not valid JSON: {exc}") from exc
        return self.import_bundle(payload)
