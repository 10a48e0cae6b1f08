"""Shared fixtures: a pinned clock and an in-memory stable world.

World layout:
  - tenant ``stable_a`` owns horses ``horse_1`` and ``horse_2``; ``alice``
    manages its sharing, ``bob`` is a plain member.
  - tenant ``lab_b`` (type laboratory) is managed by ``carol``. It holds a
    final lab result ``res_1`` and a draft ``res_2`` for ``horse_9``, whose
    active alias there is ``Sample A-17``.
  - ``stable_a`` owns media asset ``asset_1`` (an x-ray image).
  - ``horse_1`` has two vet treatments (2025-01-10, 2025-02-20), one lab
    result (2025-02-01) and one file (2025-01-05).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from stable_sharing.audit import InMemorySharingAuditLog
from stable_sharing.connections.model import (
    InMemoryConnectionRepository,
    InMemoryGrantRepository,
)
from stable_sharing.connections.presets import TenantTypePresetPolicy
from stable_sharing.connections.service import ConnectionService
from stable_sharing.dispatch import BackgroundDispatcher
from stable_sharing.inmemory import (
    InMemoryNotifier,
    InMemoryRecordStore,
    InMemoryShareableItems,
    InMemorySharingPermissions,
    InMemorySubjectDirectory,
    InMemoryTenantDirectory,
)
from stable_sharing.scope import Capability
from stable_sharing.sharing.model import InMemoryShareTokenRepository
from stable_sharing.sharing.packs import InMemorySharePackStore, SharePackCatalog
from stable_sharing.sharing.resolver import ShareViewResolver
from stable_sharing.sharing.service import ShareService

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    """Callable clock that tests move by hand."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def seed_world(subjects, records, permissions, tenants) -> None:
    subjects.add_subject(
        'horse_1', 'stable_a',
        name='Comet', name_ar='كوميت', gender='mare', birth_date='2015-04-02',
        avatar_url=None, status='active', tenant_name='Stable A',
        microchip='985000000000001', owner_phone='+966500000000',
    )
    subjects.add_subject('horse_2', 'stable_a', name='Blaze', tenant_name='Stable A')
    subjects.add_subject('horse_9', 'lab_b', name='Lab Horse', tenant_name='Lab B')

    records.add_record(Capability.VETERINARY, 'horse_1', {
        'id': 'vt_1', 'created_at': '2025-01-10T09:00:00+00:00', 'title': 'Vaccination',
    })
    records.add_record(Capability.VETERINARY, 'horse_1', {
        'id': 'vt_2', 'created_at': '2025-02-20T09:00:00+00:00', 'title': 'Colic check',
    })
    records.add_record(Capability.LABORATORY, 'horse_1', {
        'id': 'lr_1', 'created_at': '2025-02-01T10:00:00+00:00', 'test': 'CBC',
    })
    records.add_record(Capability.FILES, 'horse_1', {
        'id': 'f_1', 'created_at': '2025-01-05T10:00:00+00:00', 'name': 'xray.png',
    })
    records.add_record(Capability.LABORATORY, 'horse_9', {
        'id': 'lr_9', 'created_at': '2025-02-02T10:00:00+00:00', 'test': 'Coggins',
    })

    permissions.add_member('stable_a', 'alice', manager=True)
    permissions.add_member('stable_a', 'bob')
    permissions.add_member('lab_b', 'carol', manager=True)

    tenants.set_type('stable_a', 'stable')
    tenants.set_type('lab_b', 'laboratory')


def seed_items(items) -> None:
    items.add_lab_result(
        'res_1', 'lab_b',
        created_at='2025-02-02T10:00:00+00:00',
        flags={'wbc': 'high'},
        interpretation='Mild leukocytosis',
        result_data={'wbc': 13.1},
        template_name='CBC',
        horse_id='horse_9',
        horse_name='Lab Horse',
        tenant_name='Lab B',
    )
    items.add_lab_result('res_2', 'lab_b', status='draft', horse_id='horse_9', horse_name='Lab Horse')
    items.set_alias('lab_b', 'horse_9', 'Sample A-17')
    items.add_media_asset(
        'asset_1', 'stable_a',
        bucket='horse-media', path='stable_a/xray.png',
        filename='xray.png', mime_type='image/png',
    )


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def subjects():
    return InMemorySubjectDirectory()


@pytest.fixture
def records():
    return InMemoryRecordStore()


@pytest.fixture
def permissions():
    return InMemorySharingPermissions()


@pytest.fixture
def tenants():
    return InMemoryTenantDirectory()


@pytest.fixture
def items():
    return InMemoryShareableItems()


@pytest.fixture
def audit():
    return InMemorySharingAuditLog()


@pytest.fixture
def shares():
    return InMemoryShareTokenRepository()


@pytest.fixture
def pack_store():
    return InMemorySharePackStore()


@pytest.fixture
def connections():
    return InMemoryConnectionRepository()


@pytest.fixture
def grants():
    return InMemoryGrantRepository()


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
def dispatcher():
    return BackgroundDispatcher()


@pytest.fixture(autouse=True)
def world(subjects, records, permissions, tenants, items):
    seed_world(subjects, records, permissions, tenants)
    seed_items(items)


@pytest.fixture
def catalog(pack_store, permissions):
    return SharePackCatalog(pack_store, permissions)


@pytest.fixture
def share_service(shares, catalog, subjects, permissions, audit, items, clock):
    return ShareService(
        shares, catalog, subjects, permissions, audit,
        items=items,
        public_base_url='https://app.example.com', clock=clock,
    )


@pytest.fixture
def resolver(
    shares, catalog, subjects, records, audit, connections, grants, permissions, items, clock,
):
    return ShareViewResolver(
        shares, catalog, subjects, records, audit,
        connections=connections, grants=grants, permissions=permissions, items=items,
        timeout_seconds=2.0, clock=clock,
    )


@pytest.fixture
def connection_service(
    connections, grants, audit, permissions, tenants, notifier, dispatcher, clock,
):
    return ConnectionService(
        connections, grants, audit, permissions,
        tenants=tenants,
        presets=TenantTypePresetPolicy(),
        notifier=notifier,
        dispatcher=dispatcher,
        clock=clock,
    )
