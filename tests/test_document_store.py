import asyncio
import copy
import json

import pytest

from life_sim.data_access.document_store import (
    CompositeDocumentStore,
    InMemoryDocumentStore,
    JsonFileDocumentStore,
    PersistenceError,
    build_document_store,
)
from life_sim.data_access.write_queue import DebouncedWriter
from life_sim.utils.settings import PersistenceConfig


class RecordingStore:
    def __init__(self, *, initial=None, fail_on_save: bool = False, fail_on_load: bool = False) -> None:
        self._data = initial or {}
        self.fail_on_save = fail_on_save
        self.fail_on_load = fail_on_load
        self.save_calls = 0
        self.load_calls = 0

    async def load(self, key: str):
        self.load_calls += 1
        if self.fail_on_load:
            raise RuntimeError("load failure")
        value = self._data.get(key)
        return json.loads(json.dumps(value)) if value is not None else None

    async def save(self, key: str, document):
        self.save_calls += 1
        if self.fail_on_save:
            raise RuntimeError("save failure")
        self._data[key] = copy.deepcopy(document)

    async def delete(self, key: str):
        self._data.pop(key, None)


@pytest.mark.asyncio
# 测试：主存储有文档时直接返回，不触碰本地兜底。
async def test_composite_store_prefers_primary():
    primary = RecordingStore(initial={"brain": {"v": 1}})
    fallback = RecordingStore(initial={"brain": {"v": 2}})
    store = CompositeDocumentStore(primary=primary, fallback=fallback)

    assert await store.load("brain") == {"v": 1}
    assert fallback.load_calls == 0


@pytest.mark.asyncio
# 测试：主存储缺失时从兜底读取，并把文档回填到主存储。
async def test_composite_store_backfills_primary_on_read():
    primary = RecordingStore()
    fallback = RecordingStore(initial={"brain": {"v": 2}})
    store = CompositeDocumentStore(primary=primary, fallback=fallback)

    assert await store.load("brain") == {"v": 2}
    assert primary.save_calls == 1
    assert await primary.load("brain") == {"v": 2}


@pytest.mark.asyncio
# 测试：主存储读取失败是致命错误，抛出 PersistenceError。
async def test_composite_store_load_failure_raises():
    store = CompositeDocumentStore(
        primary=RecordingStore(fail_on_load=True), fallback=RecordingStore()
    )
    with pytest.raises(PersistenceError):
        await store.load("brain")


@pytest.mark.asyncio
# 测试：非生产模式下主存储写入失败会写入本地兜底。
async def test_composite_store_falls_back_outside_production():
    primary = RecordingStore(fail_on_save=True)
    fallback = RecordingStore()
    store = CompositeDocumentStore(primary=primary, fallback=fallback, allow_fallback_writes=True)

    await store.save("brain", {"v": 3})

    assert await fallback.load("brain") == {"v": 3}


@pytest.mark.asyncio
# 测试：生产模式下主存储写入失败直接抛出，不写兜底。
async def test_composite_store_production_write_failure_raises():
    primary = RecordingStore(fail_on_save=True)
    fallback = RecordingStore()
    store = CompositeDocumentStore(primary=primary, fallback=fallback, allow_fallback_writes=False)

    with pytest.raises(PersistenceError):
        await store.save("brain", {"v": 3})
    assert fallback.save_calls == 0


@pytest.mark.asyncio
async def test_json_file_store_persists_documents(tmp_path):
    store = JsonFileDocumentStore(tmp_path)
    await store.save("brain", {"users": {"u1": {"username": "ana"}}})

    reopened = JsonFileDocumentStore(tmp_path)
    assert await reopened.load("brain") == {"users": {"u1": {"username": "ana"}}}
    assert await reopened.load("missing") is None

    await reopened.delete("brain")
    assert await reopened.load("brain") is None


def test_build_document_store_selects_backend(tmp_path):
    assert isinstance(build_document_store(PersistenceConfig(backend="memory")), InMemoryDocumentStore)
    local = build_document_store(PersistenceConfig(backend="file", data_dir=str(tmp_path)))
    assert isinstance(local, JsonFileDocumentStore)


@pytest.mark.asyncio
# 测试：去抖窗口内的多次 schedule 只产生一次写入，且写入的是最新快照。
async def test_debounced_writer_coalesces_writes():
    store = InMemoryDocumentStore()
    state = {"n": 0}
    writer = DebouncedWriter(store, "doc", lambda: dict(state), delay=0.05)

    for i in range(10):
        state["n"] = i
        writer.schedule()
    await asyncio.sleep(0.15)

    assert store.save_calls == 1
    assert await store.load("doc") == {"n": 9}
    assert not writer.dirty


@pytest.mark.asyncio
# 测试：flush 写入失败时向调用方抛出，且保持 dirty 以便重试。
async def test_debounced_writer_flush_propagates_failure():
    store = RecordingStore(fail_on_save=True)
    writer = DebouncedWriter(store, "doc", lambda: {"n": 1}, delay=10)
    writer.schedule()

    with pytest.raises(PersistenceError):
        await writer.flush()
    assert writer.dirty
    assert writer.failures == 1

    store.fail_on_save = False
    await writer.close()
    assert not writer.dirty
    assert writer.writes == 1
