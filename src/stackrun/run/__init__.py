"""Run pipeline: provision the shared network and volume, then start services and functions."""

from stackrun.run.function import (
    RUN_ID_LABEL,
    RunFunctionTask,
    container_name,
    resolve_network,
    start_bounded,
)
from stackrun.run.network import (
    CreateNetworkTask,
    CreateVolumeTask,
    network_name,
    provision,
    volume_name,
)
from stackrun.run.ports import PortAllocator, port_is_free
from stackrun.run.services import (
    API_GATEWAY_PORT,
    STORAGE_PORT,
    RunGatewayTask,
    RunStorageTask,
    gateway_service_name,
    storage_container_name,
    storage_env,
)
from stackrun.run.subscriptions import container_subscriptions, sort_images

__all__ = [
    "API_GATEWAY_PORT",
    "CreateNetworkTask",
    "CreateVolumeTask",
    "PortAllocator",
    "RUN_ID_LABEL",
    "RunFunctionTask",
    "RunGatewayTask",
    "RunStorageTask",
    "STORAGE_PORT",
    "container_name",
    "container_subscriptions",
    "gateway_service_name",
    "network_name",
    "port_is_free",
    "provision",
    "resolve_network",
    "sort_images",
    "start_bounded",
    "storage_container_name",
    "storage_env",
    "volume_name",
]
