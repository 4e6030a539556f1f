from __future__ import annotations

import os

import pytest

from authdesk.core.manifest.store import ManifestStore
from authdesk.core.orchestrator import Orchestrator
from authdesk.core.providers.registry import ProviderRegistry, default_registry
from tests.helpers.fakes import FAST_KDF, FakeProvider, StubAligner


@pytest.fixture
def manifest_path(tmp_path):
    return os.path.join(str(tmp_path), "maFiles", "manifest.json")


@pytest.fixture
def store(manifest_path):
    s = ManifestStore(manifest_path, kdf=FAST_KDF, logger=None)
    s.load()
    return s


@pytest.fixture
def registry() -> ProviderRegistry:
    reg = default_registry()
    reg.register("fake", lambda entry, ctx: FakeProvider(entry.account_name, entry.payload, clock=ctx.clock))
    return reg


@pytest.fixture
def aligner():
    return StubAligner(server_offset=0)


@pytest.fixture
def make_orchestrator(store, registry, aligner):
    default_aligner = aligner
    made = []

    def _make(*, bus=None, aligner=None, **kw) -> Orchestrator:
        orch = Orchestrator(store=store, aligner=aligner or default_aligner, registry=registry, bus=bus, logger=None, **kw)
        made.append(orch)
        return orch

    yield _make
    for o in made:
        o.stop()
