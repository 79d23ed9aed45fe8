from app.core.config import settings
from app.platform.ports.object_storage import ObjectStoragePort
from app.platform.adapters.storage_local import LocalFilesystemStorage
from app.platform.adapters.storage_s3 import S3Storage
from app.platform.ports.event_bus import EventBusPort
from app.platform.adapters.bus_noop import NoopEventBus
from app.platform.adapters.bus_redis import RedisEventBus
from app.platform.ports.record_store import RecordStorePort
from app.platform.adapters.record_store_sql import SqlRecordStore
from app.platform.ports.run_guard import RunGuardPort
from app.platform.adapters.guard_memory import InMemoryRunGuard
from app.platform.adapters.guard_redis import RedisRunGuard

class ProviderRegistry:
    """Process-wide adapters, built on first use.

    Construction errors (e.g. S3 selected but credentials unset) surface on the
    first call and nothing is cached, so the next call retries.
    """
    _object_storage: ObjectStoragePort | None = None
    _event_bus: EventBusPort | None = None
    _record_store: RecordStorePort | None = None
    _run_guard: RunGuardPort | None = None

    @classmethod
    def object_storage(cls) -> ObjectStoragePort:
        if cls._object_storage is None:
            if settings.OBJECT_STORAGE_PROVIDER == "s3":
                cls._object_storage = S3Storage()
            else:
                cls._object_storage = LocalFilesystemStorage(settings.LOCAL_STORAGE_ROOT)
        return cls._object_storage

    @classmethod
    def event_bus(cls) -> EventBusPort:
        if cls._event_bus is None:
            prov = (settings.EVENT_BUS_PROVIDER or "noop").lower()
            if prov == "redis":
                cls._event_bus = RedisEventBus()
            else:
                cls._event_bus = NoopEventBus()
        return cls._event_bus

    @classmethod
    def record_store(cls) -> RecordStorePort:
        if cls._record_store is None:
            cls._record_store = SqlRecordStore()
        return cls._record_store

    @classmethod
    def run_guard(cls) -> RunGuardPort:
        if cls._run_guard is None:
            if settings.RUN_GUARD_PROVIDER == "redis":
                cls._run_guard = RedisRunGuard()
            else:
                cls._run_guard = InMemoryRunGuard()
        return cls._run_guard

registry = ProviderRegistry()
