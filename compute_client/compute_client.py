from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Type, TypeVar

import aiohttp
from loguru import logger

from compute_client.exceptions import ComputeClientError, ResourceNotFoundError
from compute_client.models import (
    ComputeClientConfig,
    ComputeResource,
    Flavor,
    Image,
    ImageStatus,
    KeyPair,
    RemoteConsole,
    SecurityGroup,
    SecurityGroupRule,
    Server,
    ServerAction,
    ServerGroup,
    ServerReference,
    ServerStatus,
    SnapshotStatus,
    Volume,
    VolumeAttachment,
    VolumeSnapshot,
    VolumeStatus,
    VolumeType,
)
from compute_client.status_waiter import StatusWaiter, TargetStatus

ResourceT = TypeVar("ResourceT", bound=ComputeResource)

MICROVERSION_HEADER = "X-OpenStack-Nova-API-Version"


class ComputeClient:
    """Async client for an OpenStack Compute (Nova) v2.1 endpoint.

    Every ``get_*``/``create_*``/``delete_*`` method is a single HTTP round
    trip. The ``wait_*`` methods poll the matching GET through a
    :class:`StatusWaiter` until the resource reaches a status or disappears.
    The aiohttp session is opened lazily and closed by :meth:`close` or by
    leaving the ``async with`` block.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        config: Optional[ComputeClientConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        if config is None:
            if base_url is None:
                raise ValueError("base_url or config is required")
            config = ComputeClientConfig(base_url=base_url)
        elif base_url is not None:
            config = config.model_copy(update={"base_url": base_url})

        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.waiter = StatusWaiter(config.wait)
        self.logger = logger
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "ComputeClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
            )
            self._owns_session = True
        return self._session

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            MICROVERSION_HEADER: self.config.microversion,
        }
        if self.config.token:
            headers["X-Auth-Token"] = self.config.token
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Any, Mapping[str, str]]:
        """Sends one request and returns the decoded JSON body (None when empty) and headers"""
        url = f"{self.base_url}/{path}"
        session = self._get_session()

        try:
            async with session.request(
                method, url, json=body, params=params, headers=self._headers()
            ) as response:
                response.raise_for_status()
                data = await response.json(content_type=None)
                return data, response.headers
        except aiohttp.ClientResponseError as e:
            if e.status == 404:
                self.logger.debug(f"{method} {url} returned 404")
                raise ResourceNotFoundError.from_response_error(e) from e
            self.logger.error(f"HTTP error {e.status} at {url}: {e.message}")
            raise
        except aiohttp.ClientError as e:
            self.logger.error(f"Error calling {method} {url}: {e}")
            raise

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        data, _ = await self._send(method, path, body=body, params=params)
        return data

    def _bind(self, resource: ResourceT) -> ResourceT:
        return resource.bind(self)

    async def _get_resource(
        self, path: str, key: str, model: Type[ResourceT]
    ) -> ResourceT:
        data = await self._request("GET", path)
        return self._bind(model.model_validate(data[key]))

    async def _create_resource(
        self, path: str, key: str, body: Dict[str, Any], model: Type[ResourceT]
    ) -> ResourceT:
        data = await self._request("POST", path, body={key: body})
        return self._bind(model.model_validate(data[key]))

    async def _list_resources(
        self,
        path: str,
        key: str,
        model: Type[ResourceT],
        params: Optional[Dict[str, Any]] = None,
    ) -> List[ResourceT]:
        data = await self._request("GET", path, params=params)
        return [self._bind(model.model_validate(item)) for item in data[key]]

    async def _server_action(
        self, server_id: str, action: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        return await self._request("POST", f"servers/{server_id}/action", body=action)

    # Servers

    async def get_server(self, server_id: str) -> Server:
        return await self._get_resource(f"servers/{server_id}", "server", Server)

    async def create_server(
        self,
        name: str,
        image_id: Optional[str],
        flavor_id: str,
        **attributes: Any,
    ) -> Server:
        body: Dict[str, Any] = {"name": name, "flavorRef": flavor_id, **attributes}
        if image_id is not None:
            body["imageRef"] = image_id
        return await self._create_resource("servers", "server", body, Server)

    async def update_server(self, server_id: str, **attributes: Any) -> Server:
        data = await self._request(
            "PUT", f"servers/{server_id}", body={"server": attributes}
        )
        return self._bind(Server.model_validate(data["server"]))

    async def delete_server(self, server_id: str) -> None:
        await self._request("DELETE", f"servers/{server_id}")

    async def list_servers(self, **filters: Any) -> List[Server]:
        return await self._list_resources(
            "servers/detail", "servers", Server, params=filters or None
        )

    async def list_server_references(self, **filters: Any) -> List[ServerReference]:
        return await self._list_resources(
            "servers", "servers", ServerReference, params=filters or None
        )

    async def start_server(self, server_id: str) -> None:
        await self._server_action(server_id, {"os-start": None})

    async def stop_server(self, server_id: str) -> None:
        await self._server_action(server_id, {"os-stop": None})

    async def reboot_server(self, server_id: str, hard: bool = False) -> None:
        await self._server_action(
            server_id, {"reboot": {"type": "HARD" if hard else "SOFT"}}
        )

    async def snapshot_server(
        self, server_id: str, name: str, metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """Creates an image of the server and returns the new image id"""
        request: Dict[str, Any] = {"name": name}
        if metadata:
            request["metadata"] = metadata
        data, headers = await self._send(
            "POST", f"servers/{server_id}/action", body={"createImage": request}
        )
        if data and "image_id" in data:
            return data["image_id"]
        location = headers.get("Location", "")
        image_id = location.rstrip("/").rsplit("/", 1)[-1]
        if not image_id:
            raise ComputeClientError(
                f"Snapshot of server {server_id} returned no image id"
            )
        return image_id

    async def resize_server(self, server_id: str, flavor_id: str) -> None:
        await self._server_action(server_id, {"resize": {"flavorRef": flavor_id}})

    async def confirm_resize_server(self, server_id: str) -> None:
        await self._server_action(server_id, {"confirmResize": None})

    async def cancel_resize_server(self, server_id: str) -> None:
        await self._server_action(server_id, {"revertResize": None})

    async def rescue_server(
        self,
        server_id: str,
        image_id: Optional[str] = None,
        admin_pass: Optional[str] = None,
    ) -> Optional[str]:
        """Puts the server in rescue mode and returns the rescue admin password"""
        request: Dict[str, Any] = {}
        if image_id is not None:
            request["rescue_image_ref"] = image_id
        if admin_pass is not None:
            request["adminPass"] = admin_pass
        data = await self._server_action(server_id, {"rescue": request or None}) or {}
        return data.get("adminPass")

    async def unrescue_server(self, server_id: str) -> None:
        await self._server_action(server_id, {"unrescue": None})

    async def get_console_output(self, server_id: str, length: int = -1) -> str:
        request: Dict[str, Any] = {}
        if length >= 0:
            request["length"] = length
        data = await self._server_action(
            server_id, {"os-getConsoleOutput": request}
        ) or {}
        return data.get("output", "")

    async def _get_remote_console(
        self, server_id: str, action: str, console_type: str
    ) -> RemoteConsole:
        data = await self._server_action(server_id, {action: {"type": console_type}})
        return RemoteConsole.model_validate(data["console"])

    async def get_vnc_console(
        self, server_id: str, console_type: str = "novnc"
    ) -> RemoteConsole:
        return await self._get_remote_console(server_id, "os-getVNCConsole", console_type)

    async def get_spice_console(
        self, server_id: str, console_type: str = "spice-html5"
    ) -> RemoteConsole:
        return await self._get_remote_console(
            server_id, "os-getSPICEConsole", console_type
        )

    async def get_serial_console(
        self, server_id: str, console_type: str = "serial"
    ) -> RemoteConsole:
        return await self._get_remote_console(
            server_id, "os-getSerialConsole", console_type
        )

    async def get_rdp_console(
        self, server_id: str, console_type: str = "rdp-html5"
    ) -> RemoteConsole:
        return await self._get_remote_console(server_id, "os-getRDPConsole", console_type)

    async def evacuate_server(
        self,
        server_id: str,
        host: Optional[str] = None,
        admin_pass: Optional[str] = None,
        on_shared_storage: Optional[bool] = None,
    ) -> Optional[str]:
        """Rebuilds the server on another host and returns its admin password, if any"""
        request: Dict[str, Any] = {}
        if host is not None:
            request["host"] = host
        if admin_pass is not None:
            request["adminPass"] = admin_pass
        if on_shared_storage is not None:
            request["onSharedStorage"] = on_shared_storage
        data = await self._server_action(server_id, {"evacuate": request}) or {}
        return data.get("adminPass")

    async def list_server_actions(self, server_id: str) -> List[ServerAction]:
        return await self._list_resources(
            f"servers/{server_id}/os-instance-actions", "instanceActions", ServerAction
        )

    async def get_server_action(self, server_id: str, request_id: str) -> ServerAction:
        return await self._get_resource(
            f"servers/{server_id}/os-instance-actions/{request_id}",
            "instanceAction",
            ServerAction,
        )

    async def list_server_addresses(
        self, server_id: str
    ) -> Dict[str, List[Dict[str, Any]]]:
        data = await self._request("GET", f"servers/{server_id}/ips")
        return data["addresses"]

    async def get_server_address(
        self, server_id: str, network: str
    ) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"servers/{server_id}/ips/{network}")
        return data[network]

    async def wait_for_server_status(
        self, server_id: str, status: TargetStatus, **wait_options: Any
    ) -> Server:
        """Waits for the server to reach ``status`` (or any of several statuses)"""
        server = await self.waiter.wait_for_status(
            server_id, status, lambda: self.get_server(server_id), **wait_options
        )
        return self._bind(server)

    async def wait_until_server_deleted(
        self,
        server_id: str,
        deleted_status: ServerStatus = ServerStatus.DELETED,
        **wait_options: Any,
    ) -> None:
        """Waits for the server to be deleted, treating a 404 as confirmation"""
        await self.waiter.wait_until_deleted(
            server_id,
            deleted_status,
            lambda: self.get_server(server_id),
            **wait_options,
        )

    # Flavors

    async def get_flavor(self, flavor_id: str) -> Flavor:
        return await self._get_resource(f"flavors/{flavor_id}", "flavor", Flavor)

    async def list_flavors(self) -> List[Flavor]:
        return await self._list_resources("flavors", "flavors", Flavor)

    async def list_flavor_details(self) -> List[Flavor]:
        return await self._list_resources("flavors/detail", "flavors", Flavor)

    # Images

    async def get_image(self, image_id: str) -> Image:
        return await self._get_resource(f"images/{image_id}", "image", Image)

    async def list_images(self, **filters: Any) -> List[Image]:
        return await self._list_resources(
            "images", "images", Image, params=filters or None
        )

    async def list_image_details(self, **filters: Any) -> List[Image]:
        return await self._list_resources(
            "images/detail", "images", Image, params=filters or None
        )

    async def delete_image(self, image_id: str) -> None:
        await self._request("DELETE", f"images/{image_id}")

    async def get_image_metadata(self, image_id: str) -> Dict[str, str]:
        data = await self._request("GET", f"images/{image_id}/metadata")
        return data["metadata"]

    async def get_image_metadata_item(self, image_id: str, key: str) -> str:
        data = await self._request("GET", f"images/{image_id}/metadata/{key}")
        return data["meta"][key]

    async def set_image_metadata_item(self, image_id: str, key: str, value: str) -> None:
        await self._request(
            "PUT", f"images/{image_id}/metadata/{key}", body={"meta": {key: value}}
        )

    async def update_image_metadata(
        self, image_id: str, metadata: Dict[str, str], overwrite: bool = False
    ) -> Dict[str, str]:
        """Merges ``metadata`` into the image metadata, or replaces it when ``overwrite``"""
        data = await self._request(
            "PUT" if overwrite else "POST",
            f"images/{image_id}/metadata",
            body={"metadata": metadata},
        )
        return data["metadata"]

    async def delete_image_metadata_item(self, image_id: str, key: str) -> None:
        await self._request("DELETE", f"images/{image_id}/metadata/{key}")

    async def wait_for_image_status(
        self, image_id: str, status: TargetStatus, **wait_options: Any
    ) -> Image:
        image = await self.waiter.wait_for_status(
            image_id, status, lambda: self.get_image(image_id), **wait_options
        )
        return self._bind(image)

    async def wait_until_image_deleted(
        self,
        image_id: str,
        deleted_status: ImageStatus = ImageStatus.DELETED,
        **wait_options: Any,
    ) -> None:
        await self.waiter.wait_until_deleted(
            image_id, deleted_status, lambda: self.get_image(image_id), **wait_options
        )

    # Server volumes

    async def list_server_volumes(self, server_id: str) -> List[VolumeAttachment]:
        return await self._list_resources(
            f"servers/{server_id}/os-volume_attachments",
            "volumeAttachments",
            VolumeAttachment,
        )

    async def get_server_volume(self, server_id: str, volume_id: str) -> VolumeAttachment:
        return await self._get_resource(
            f"servers/{server_id}/os-volume_attachments/{volume_id}",
            "volumeAttachment",
            VolumeAttachment,
        )

    async def attach_volume(
        self, server_id: str, volume_id: str, device: Optional[str] = None
    ) -> VolumeAttachment:
        request: Dict[str, Any] = {"volumeId": volume_id}
        if device is not None:
            request["device"] = device
        return await self._create_resource(
            f"servers/{server_id}/os-volume_attachments",
            "volumeAttachment",
            request,
            VolumeAttachment,
        )

    async def detach_volume(self, server_id: str, volume_id: str) -> None:
        await self._request(
            "DELETE", f"servers/{server_id}/os-volume_attachments/{volume_id}"
        )

    # Key pairs

    async def get_key_pair(self, name: str) -> KeyPair:
        return await self._get_resource(f"os-keypairs/{name}", "keypair", KeyPair)

    async def create_key_pair(
        self, name: str, public_key: Optional[str] = None, **attributes: Any
    ) -> KeyPair:
        """Imports ``public_key``, or has the server generate a new key pair"""
        body: Dict[str, Any] = {"name": name, **attributes}
        if public_key is not None:
            body["public_key"] = public_key
        return await self._create_resource("os-keypairs", "keypair", body, KeyPair)

    async def list_key_pairs(self) -> List[KeyPair]:
        data = await self._request("GET", "os-keypairs")
        return [
            self._bind(KeyPair.model_validate(item["keypair"]))
            for item in data["keypairs"]
        ]

    async def delete_key_pair(self, name: str) -> None:
        await self._request("DELETE", f"os-keypairs/{name}")

    # Security groups

    async def get_security_group(self, security_group_id: str) -> SecurityGroup:
        return await self._get_resource(
            f"os-security-groups/{security_group_id}", "security_group", SecurityGroup
        )

    async def create_security_group(
        self, name: str, description: str = ""
    ) -> SecurityGroup:
        return await self._create_resource(
            "os-security-groups",
            "security_group",
            {"name": name, "description": description},
            SecurityGroup,
        )

    async def update_security_group(
        self, security_group_id: str, **attributes: Any
    ) -> SecurityGroup:
        data = await self._request(
            "PUT",
            f"os-security-groups/{security_group_id}",
            body={"security_group": attributes},
        )
        return self._bind(SecurityGroup.model_validate(data["security_group"]))

    async def list_security_groups(
        self, server_id: Optional[str] = None
    ) -> List[SecurityGroup]:
        path = (
            "os-security-groups"
            if server_id is None
            else f"servers/{server_id}/os-security-groups"
        )
        return await self._list_resources(path, "security_groups", SecurityGroup)

    async def delete_security_group(self, security_group_id: str) -> None:
        await self._request("DELETE", f"os-security-groups/{security_group_id}")

    async def create_security_group_rule(
        self,
        parent_group_id: str,
        ip_protocol: str,
        from_port: int,
        to_port: int,
        cidr: Optional[str] = None,
        group_id: Optional[str] = None,
    ) -> SecurityGroupRule:
        body: Dict[str, Any] = {
            "parent_group_id": parent_group_id,
            "ip_protocol": ip_protocol,
            "from_port": from_port,
            "to_port": to_port,
        }
        if cidr is not None:
            body["cidr"] = cidr
        if group_id is not None:
            body["group_id"] = group_id
        return await self._create_resource(
            "os-security-group-rules", "security_group_rule", body, SecurityGroupRule
        )

    async def delete_security_group_rule(self, rule_id: str) -> None:
        await self._request("DELETE", f"os-security-group-rules/{rule_id}")

    # Server groups

    async def get_server_group(self, server_group_id: str) -> ServerGroup:
        return await self._get_resource(
            f"os-server-groups/{server_group_id}", "server_group", ServerGroup
        )

    async def create_server_group(
        self, name: str, policies: Iterable[str]
    ) -> ServerGroup:
        return await self._create_resource(
            "os-server-groups",
            "server_group",
            {"name": name, "policies": list(policies)},
            ServerGroup,
        )

    async def list_server_groups(self) -> List[ServerGroup]:
        return await self._list_resources(
            "os-server-groups", "server_groups", ServerGroup
        )

    async def delete_server_group(self, server_group_id: str) -> None:
        await self._request("DELETE", f"os-server-groups/{server_group_id}")

    # Volumes

    async def get_volume(self, volume_id: str) -> Volume:
        return await self._get_resource(f"os-volumes/{volume_id}", "volume", Volume)

    async def create_volume(
        self, size: int, name: Optional[str] = None, **attributes: Any
    ) -> Volume:
        body: Dict[str, Any] = {"size": size, **attributes}
        if name is not None:
            body["display_name"] = name
        return await self._create_resource("os-volumes", "volume", body, Volume)

    async def list_volumes(self) -> List[Volume]:
        return await self._list_resources("os-volumes", "volumes", Volume)

    async def delete_volume(self, volume_id: str) -> None:
        await self._request("DELETE", f"os-volumes/{volume_id}")

    async def get_volume_type(self, volume_type_id: str) -> VolumeType:
        return await self._get_resource(
            f"os-volume-types/{volume_type_id}", "volume_type", VolumeType
        )

    async def list_volume_types(self) -> List[VolumeType]:
        return await self._list_resources(
            "os-volume-types", "volume_types", VolumeType
        )

    async def get_volume_snapshot(self, snapshot_id: str) -> VolumeSnapshot:
        return await self._get_resource(
            f"os-snapshots/{snapshot_id}", "snapshot", VolumeSnapshot
        )

    async def snapshot_volume(
        self,
        volume_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        force: bool = False,
    ) -> VolumeSnapshot:
        body: Dict[str, Any] = {"volume_id": volume_id, "force": force}
        if name is not None:
            body["display_name"] = name
        if description is not None:
            body["display_description"] = description
        return await self._create_resource(
            "os-snapshots", "snapshot", body, VolumeSnapshot
        )

    async def list_volume_snapshots(self) -> List[VolumeSnapshot]:
        return await self._list_resources("os-snapshots", "snapshots", VolumeSnapshot)

    async def delete_volume_snapshot(self, snapshot_id: str) -> None:
        await self._request("DELETE", f"os-snapshots/{snapshot_id}")

    async def wait_for_volume_status(
        self, volume_id: str, status: TargetStatus, **wait_options: Any
    ) -> Volume:
        volume = await self.waiter.wait_for_status(
            volume_id, status, lambda: self.get_volume(volume_id), **wait_options
        )
        return self._bind(volume)

    async def wait_until_volume_deleted(
        self,
        volume_id: str,
        deleted_status: VolumeStatus = VolumeStatus.DELETED,
        **wait_options: Any,
    ) -> None:
        await self.waiter.wait_until_deleted(
            volume_id,
            deleted_status,
            lambda: self.get_volume(volume_id),
            **wait_options,
        )

    async def wait_for_volume_snapshot_status(
        self, snapshot_id: str, status: TargetStatus, **wait_options: Any
    ) -> VolumeSnapshot:
        snapshot = await self.waiter.wait_for_status(
            snapshot_id,
            status,
            lambda: self.get_volume_snapshot(snapshot_id),
            **wait_options,
        )
        return self._bind(snapshot)

    async def wait_until_volume_snapshot_deleted(
        self,
        snapshot_id: str,
        deleted_status: SnapshotStatus = SnapshotStatus.DELETED,
        **wait_options: Any,
    ) -> None:
        await self.waiter.wait_until_deleted(
            snapshot_id,
            deleted_status,
            lambda: self.get_volume_snapshot(snapshot_id),
            **wait_options,
        )

    # Compute service

    async def get_limits(self) -> Dict[str, Any]:
        data = await self._request("GET", "limits")
        return data["limits"]

    async def get_current_quotas(self) -> Dict[str, Any]:
        data = await self._request("GET", "os-quota-sets/details")
        return data["quota_set"]

    async def get_default_quotas(self) -> Dict[str, Any]:
        data = await self._request("GET", "os-quota-sets/defaults")
        return data["quota_set"]

