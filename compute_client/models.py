import asyncio
import os
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    ClassVar,
    Dict,
    List,
    Optional,
    TypeVar,
)

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic_core import core_schema

if TYPE_CHECKING:
    from compute_client.compute_client import ComputeClient

StatusT = TypeVar("StatusT", bound="ResourceStatus")


class ResourceStatus:
    """An open, string-backed status value.

    Statuses compare by their upper-cased name within the same status type, so
    ``ServerStatus("active") == ServerStatus.ACTIVE``. Well-known values are
    declared with :meth:`define`; any other name coming back from the API
    still parses into a plain, non-error instance of the type.
    """

    __slots__ = ("_name", "_key", "_is_error")

    _known: ClassVar[Dict[str, "ResourceStatus"]] = {}

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        cls._known = {}

    def __init__(self, name: str, is_error: bool = False):
        if not isinstance(name, str) or not name.strip():
            raise ValueError("status name must be a non-empty string")
        object.__setattr__(self, "_name", name.strip())
        object.__setattr__(self, "_key", name.strip().upper())
        object.__setattr__(self, "_is_error", is_error)

    def __setattr__(self, key, value):
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __reduce__(self):
        return type(self), (self._name, self._is_error)

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_error(self) -> bool:
        return self._is_error

    @classmethod
    def define(cls: type[StatusT], name: str, is_error: bool = False) -> StatusT:
        status = cls(name, is_error=is_error)
        cls._known[status._key] = status
        return status

    @classmethod
    def from_name(cls: type[StatusT], name: str) -> StatusT:
        if not isinstance(name, str):
            raise ValueError(f"Cannot parse {type(name).__name__} as a status")
        known = cls._known.get(name.strip().upper())
        if known is not None:
            return known
        return cls(name)

    @classmethod
    def known(cls: type[StatusT]) -> List[StatusT]:
        return list(cls._known.values())

    @classmethod
    def _validate(cls, value: Any) -> "ResourceStatus":
        if isinstance(value, cls):
            return value
        if isinstance(value, ResourceStatus):
            return cls.from_name(value.name)
        return cls.from_name(value)

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type: Any, handler: Any):
        return core_schema.no_info_plain_validator_function(
            cls._validate,
            serialization=core_schema.plain_serializer_function_ser_schema(str),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResourceStatus):
            return NotImplemented
        return type(self) is type(other) and self._key == other._key

    def __hash__(self) -> int:
        return hash((type(self).__name__, self._key))

    def __str__(self) -> str:
        return self._name

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._name!r})"


class ServerStatus(ResourceStatus):
    __slots__ = ()


ServerStatus.ACTIVE = ServerStatus.define("ACTIVE")
ServerStatus.BUILD = ServerStatus.define("BUILD")
ServerStatus.DELETED = ServerStatus.define("DELETED")
ServerStatus.ERROR = ServerStatus.define("ERROR", is_error=True)
ServerStatus.HARD_REBOOT = ServerStatus.define("HARD_REBOOT")
ServerStatus.MIGRATING = ServerStatus.define("MIGRATING")
ServerStatus.PASSWORD = ServerStatus.define("PASSWORD")
ServerStatus.PAUSED = ServerStatus.define("PAUSED")
ServerStatus.REBOOT = ServerStatus.define("REBOOT")
ServerStatus.REBUILD = ServerStatus.define("REBUILD")
ServerStatus.RESCUE = ServerStatus.define("RESCUE")
ServerStatus.RESIZE = ServerStatus.define("RESIZE")
ServerStatus.REVERT_RESIZE = ServerStatus.define("REVERT_RESIZE")
ServerStatus.SHELVED = ServerStatus.define("SHELVED")
ServerStatus.SHELVED_OFFLOADED = ServerStatus.define("SHELVED_OFFLOADED")
ServerStatus.SHUTOFF = ServerStatus.define("SHUTOFF")
ServerStatus.SOFT_DELETED = ServerStatus.define("SOFT_DELETED")
ServerStatus.SUSPENDED = ServerStatus.define("SUSPENDED")
ServerStatus.UNKNOWN = ServerStatus.define("UNKNOWN")
ServerStatus.VERIFY_RESIZE = ServerStatus.define("VERIFY_RESIZE")


class ImageStatus(ResourceStatus):
    __slots__ = ()


ImageStatus.ACTIVE = ImageStatus.define("ACTIVE")
ImageStatus.SAVING = ImageStatus.define("SAVING")
ImageStatus.DELETED = ImageStatus.define("DELETED")
ImageStatus.ERROR = ImageStatus.define("ERROR", is_error=True)
ImageStatus.UNKNOWN = ImageStatus.define("UNKNOWN")


class VolumeStatus(ResourceStatus):
    __slots__ = ()


VolumeStatus.CREATING = VolumeStatus.define("creating")
VolumeStatus.AVAILABLE = VolumeStatus.define("available")
VolumeStatus.ATTACHING = VolumeStatus.define("attaching")
VolumeStatus.DETACHING = VolumeStatus.define("detaching")
VolumeStatus.IN_USE = VolumeStatus.define("in-use")
VolumeStatus.MAINTENANCE = VolumeStatus.define("maintenance")
VolumeStatus.DELETING = VolumeStatus.define("deleting")
VolumeStatus.DELETED = VolumeStatus.define("deleted")
VolumeStatus.ERROR = VolumeStatus.define("error", is_error=True)
VolumeStatus.ERROR_DELETING = VolumeStatus.define("error_deleting", is_error=True)
VolumeStatus.ERROR_EXTENDING = VolumeStatus.define("error_extending", is_error=True)


class SnapshotStatus(ResourceStatus):
    __slots__ = ()


SnapshotStatus.CREATING = SnapshotStatus.define("creating")
SnapshotStatus.AVAILABLE = SnapshotStatus.define("available")
SnapshotStatus.DELETING = SnapshotStatus.define("deleting")
SnapshotStatus.DELETED = SnapshotStatus.define("deleted")
SnapshotStatus.ERROR = SnapshotStatus.define("error", is_error=True)
SnapshotStatus.ERROR_DELETING = SnapshotStatus.define("error_deleting", is_error=True)


class WaitConfig(BaseModel):
    """Defaults for status waits; keyword arguments on each wait override them.

    A ``cancel_event`` set here is shared by every wait that uses this config,
    so setting it cancels all of them. Pass ``cancel_event`` to the wait call
    to cancel a single wait.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    refresh_delay: float = Field(default=5.0, gt=0)
    timeout: Optional[float] = Field(default=None, ge=0)  # None waits forever
    progress: Optional[Callable[[bool], Any]] = None
    cancel_event: Optional[asyncio.Event] = None
    fail_on_error_status: bool = True


class ComputeClientConfig(BaseModel):
    base_url: str
    token: Optional[str] = None
    microversion: str = "2.1"
    request_timeout: float = Field(default=30.0, gt=0)
    wait: WaitConfig = Field(default_factory=WaitConfig)

    @classmethod
    def from_env(cls, **overrides: Any) -> "ComputeClientConfig":
        """Build a config from the OS_* environment variables used by the OpenStack CLIs"""
        values: Dict[str, Any] = {}
        if "OS_COMPUTE_URL" in os.environ:
            values["base_url"] = os.environ["OS_COMPUTE_URL"]
        if "OS_AUTH_TOKEN" in os.environ:
            values["token"] = os.environ["OS_AUTH_TOKEN"]
        if "OS_COMPUTE_API_VERSION" in os.environ:
            values["microversion"] = os.environ["OS_COMPUTE_API_VERSION"]
        values.update(overrides)
        return cls(**values)


class ComputeResource(BaseModel):
    """Base for JSON payloads returned by the compute API"""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    _owner: Any = PrivateAttr(default=None)

    def bind(self, owner: "ComputeClient") -> "ComputeResource":
        self._owner = owner
        return self

    @property
    def owner(self) -> "ComputeClient":
        if self._owner is None:
            raise RuntimeError(
                f"{type(self).__name__} is not bound to a ComputeClient"
            )
        return self._owner


class Link(BaseModel):
    href: str
    rel: Optional[str] = None


class FlavorReference(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    original_name: Optional[str] = None


class ImageReference(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None


class Server(ComputeResource):
    id: str
    name: Optional[str] = None
    status: Optional[ServerStatus] = None
    image: Optional[Any] = None
    flavor: Optional[FlavorReference] = None
    addresses: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)
    metadata: Dict[str, str] = Field(default_factory=dict)
    admin_pass: Optional[str] = Field(default=None, alias="adminPass")
    links: List[Link] = Field(default_factory=list)

    async def wait_for_status(self, status, **kwargs) -> "Server":
        return await self.owner.wait_for_server_status(self.id, status, **kwargs)

    async def wait_until_active(self, **kwargs) -> "Server":
        return await self.wait_for_status(ServerStatus.ACTIVE, **kwargs)

    async def wait_until_deleted(self, **kwargs) -> None:
        await self.owner.wait_until_server_deleted(self.id, **kwargs)

    async def delete(self) -> None:
        await self.owner.delete_server(self.id)


class ServerReference(ComputeResource):
    id: str
    name: Optional[str] = None
    links: List[Link] = Field(default_factory=list)


class Image(ComputeResource):
    id: str
    name: Optional[str] = None
    status: Optional[ImageStatus] = None
    progress: Optional[int] = None
    min_disk: Optional[int] = Field(default=None, alias="minDisk")
    min_ram: Optional[int] = Field(default=None, alias="minRam")
    metadata: Dict[str, str] = Field(default_factory=dict)
    links: List[Link] = Field(default_factory=list)

    async def wait_for_status(self, status, **kwargs) -> "Image":
        return await self.owner.wait_for_image_status(self.id, status, **kwargs)

    async def wait_until_active(self, **kwargs) -> "Image":
        return await self.wait_for_status(ImageStatus.ACTIVE, **kwargs)

    async def wait_until_deleted(self, **kwargs) -> None:
        await self.owner.wait_until_image_deleted(self.id, **kwargs)

    async def delete(self) -> None:
        await self.owner.delete_image(self.id)


class Flavor(ComputeResource):
    id: str
    name: Optional[str] = None
    ram: Optional[int] = None
    vcpus: Optional[int] = None
    disk: Optional[int] = None
    links: List[Link] = Field(default_factory=list)


class Volume(ComputeResource):
    id: str
    name: Optional[str] = Field(default=None, alias="displayName")
    description: Optional[str] = Field(default=None, alias="displayDescription")
    status: Optional[VolumeStatus] = None
    size: Optional[int] = None
    volume_type: Optional[str] = Field(default=None, alias="volumeType")
    availability_zone: Optional[str] = Field(default=None, alias="availabilityZone")
    snapshot_id: Optional[str] = Field(default=None, alias="snapshotId")
    attachments: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Dict[str, str] = Field(default_factory=dict)

    async def wait_for_status(self, status, **kwargs) -> "Volume":
        return await self.owner.wait_for_volume_status(self.id, status, **kwargs)

    async def wait_until_available(self, **kwargs) -> "Volume":
        return await self.wait_for_status(VolumeStatus.AVAILABLE, **kwargs)

    async def wait_until_deleted(self, **kwargs) -> None:
        await self.owner.wait_until_volume_deleted(self.id, **kwargs)

    async def delete(self) -> None:
        await self.owner.delete_volume(self.id)

    async def snapshot(self, name: Optional[str] = None, **kwargs) -> "VolumeSnapshot":
        return await self.owner.snapshot_volume(self.id, name=name, **kwargs)


class VolumeSnapshot(ComputeResource):
    id: str
    volume_id: Optional[str] = Field(default=None, alias="volumeId")
    name: Optional[str] = Field(default=None, alias="displayName")
    description: Optional[str] = Field(default=None, alias="displayDescription")
    status: Optional[SnapshotStatus] = None
    size: Optional[int] = None

    async def wait_for_status(self, status, **kwargs) -> "VolumeSnapshot":
        return await self.owner.wait_for_volume_snapshot_status(
            self.id, status, **kwargs
        )

    async def wait_until_available(self, **kwargs) -> "VolumeSnapshot":
        return await self.wait_for_status(SnapshotStatus.AVAILABLE, **kwargs)

    async def wait_until_deleted(self, **kwargs) -> None:
        await self.owner.wait_until_volume_snapshot_deleted(self.id, **kwargs)

    async def delete(self) -> None:
        await self.owner.delete_volume_snapshot(self.id)


class VolumeType(ComputeResource):
    id: str
    name: Optional[str] = None
    extra_specs: Dict[str, str] = Field(default_factory=dict)


class VolumeAttachment(ComputeResource):
    id: Optional[str] = None
    server_id: Optional[str] = Field(default=None, alias="serverId")
    volume_id: Optional[str] = Field(default=None, alias="volumeId")
    device: Optional[str] = None


class KeyPair(ComputeResource):
    name: str
    public_key: Optional[str] = None
    private_key: Optional[str] = None
    fingerprint: Optional[str] = None
    type: Optional[str] = None


class SecurityGroupRule(ComputeResource):
    id: str
    parent_group_id: Optional[str] = None
    ip_protocol: Optional[str] = None
    from_port: Optional[int] = None
    to_port: Optional[int] = None
    ip_range: Dict[str, Any] = Field(default_factory=dict)
    group: Dict[str, Any] = Field(default_factory=dict)


class SecurityGroup(ComputeResource):
    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    tenant_id: Optional[str] = None
    rules: List[SecurityGroupRule] = Field(default_factory=list)


class ServerGroup(ComputeResource):
    id: str
    name: Optional[str] = None
    policies: List[str] = Field(default_factory=list)
    members: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ServerAction(ComputeResource):
    action: Optional[str] = None
    request_id: Optional[str] = None
    instance_uuid: Optional[str] = None
    user_id: Optional[str] = None
    project_id: Optional[str] = None
    start_time: Optional[str] = None
    message: Optional[str] = None
    events: List[Dict[str, Any]] = Field(default_factory=list)


class RemoteConsole(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    url: Optional[str] = None
