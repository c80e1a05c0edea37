from reader_ai.providers.base import Provider
from reader_ai.providers.cloud import CloudDirectProvider, CloudProxyProvider
from reader_ai.providers.on_device import OnDeviceWorkerProvider
from reader_ai.providers.platform import PlatformNativeProvider

__all__ = [
    "CloudDirectProvider",
    "CloudProxyProvider",
    "OnDeviceWorkerProvider",
    "PlatformNativeProvider",
    "Provider",
]
