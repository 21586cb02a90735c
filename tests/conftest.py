from __future__ import annotations

import pytest

from fakes import FakeCluster
from kmon.pods import PodManager
from kmon.pvcs import PVCManager


@pytest.fixture
def fake_cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def pod_manager(fake_cluster: FakeCluster) -> PodManager:
    return PodManager(core=fake_cluster)


@pytest.fixture
def pvc_manager(fake_cluster: FakeCluster) -> PVCManager:
    return PVCManager(core=fake_cluster, snapshots=fake_cluster)
