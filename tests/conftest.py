"""Shared fixtures for the fulfillment tests.

Builds a fake Drive layout and wires the real services around the fakes in
tests/helpers so the pipeline runs end to end without network or binaries.
"""

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

import pytest

from services.asset_resolver import AssetResolver
from services.config import Settings
from services.failure_policy import AdminAlerter, FailurePolicy
from services.fulfillment import FulfillmentOrchestrator
from services.tracker_store import TrackerStore

from tests.helpers import BASE_TIME, CountingBackend, FakeAssetStore, FakeNotifier, FakePackager


@dataclass
class Library:
    """Folder ids of the fake Drive layout."""

    root: str
    incoming: str
    processed: str
    deliverables: str
    thank_you_root: str
    tracker: str


@dataclass
class Pipeline:
    settings: Settings
    store: FakeAssetStore
    tracker: TrackerStore
    backend: CountingBackend
    buyer_mail: FakeNotifier
    admin_mail: FakeNotifier
    policy: FailurePolicy
    packager: FakePackager
    orchestrator: FulfillmentOrchestrator


@pytest.fixture
def store() -> FakeAssetStore:
    return FakeAssetStore()


@pytest.fixture
def library(store: FakeAssetStore) -> Library:
    """Drive layout with three products and a thank-you card.

    Sunset has A2, Moonrise only 40x40, Ocean (bonus collection) has both.
    """
    root = store.add_folder("drive", "Assets")
    digital = store.add_folder(root.id, "Digital Art")
    bonus = store.add_folder(root.id, "Bonus Collection")

    sunset = store.add_folder(digital.id, "Sunset")
    store.add_file(store.add_folder(sunset.id, "A2").id, "sunset_a2.jpg", b"sunset")
    moonrise = store.add_folder(digital.id, "Moonrise")
    store.add_file(store.add_folder(moonrise.id, "40x40").id, "moonrise_40.jpg", b"moon")
    ocean = store.add_folder(bonus.id, "Ocean")
    store.add_file(store.add_folder(ocean.id, "A2").id, "ocean_a2.jpg", b"ocean")
    store.add_file(store.add_folder(ocean.id, "40x40").id, "ocean_40.jpg", b"ocean40")

    thank_you_root = store.add_folder("drive", "Extras")
    card = store.add_folder(thank_you_root.id, "Thank You Card")
    store.add_file(card.id, "thank_you.pdf", b"%PDF")

    return Library(
        root=root.id,
        incoming=store.add_folder("drive", "Incoming").id,
        processed=store.add_folder("drive", "Processed").id,
        deliverables=store.add_folder("drive", "Deliverables").id,
        thank_you_root=thank_you_root.id,
        tracker=store.add_folder("drive", "Tracker").id,
    )


@pytest.fixture
def settings(library: Library, tmp_path: Path) -> Settings:
    return Settings(
        incoming_folder_id=library.incoming,
        processed_folder_id=library.processed,
        deliverables_folder_id=library.deliverables,
        assets_root_folder_id=library.root,
        thank_you_folder_id=library.thank_you_root,
        tracker_backend="local",
        tracker_local_dir=str(tmp_path / "state"),
        scratch_dir=str(tmp_path / "scratch"),
        admin_email="ops@example.com",
        contact_email="hello@example.com",
        mail_retry_delay_sec=0,
    )


@pytest.fixture
def make_pipeline(store: FakeAssetStore, settings: Settings, tmp_path: Path):
    """Factory so tests can tweak settings or the buyer notifier first."""

    def _make(*, buyer_mail: Optional[FakeNotifier] = None, dry_run: bool = False, **overrides) -> Pipeline:
        for key, value in overrides.items():
            setattr(settings, key, value)
        backend = CountingBackend(settings.tracker_local_dir)
        admin_mail = FakeNotifier()
        alerter = AdminAlerter(admin_mail, settings.admin_email)
        tracker = TrackerStore(backend, alert=alerter)
        policy = FailurePolicy(tracker, alerter, max_attempts=settings.max_order_attempts)
        resolver = AssetResolver(
            store,
            root_folder_id=settings.assets_root_folder_id,
            collections=settings.collection_folders,
            format_variants=settings.product_format_variants,
            thank_you_folder_id=settings.thank_you_folder_id,
            thank_you_folder_name=settings.thank_you_folder_name,
            match_order_size=settings.match_order_size,
        )
        buyer_mail = buyer_mail or FakeNotifier()
        packager = FakePackager()
        orchestrator = FulfillmentOrchestrator(
            settings,
            store=store,
            tracker=tracker,
            resolver=resolver,
            notifier=buyer_mail,
            policy=policy,
            packager=packager,
            dry_run=dry_run,
            now=lambda: BASE_TIME + timedelta(days=2),
        )
        return Pipeline(settings, store, tracker, backend, buyer_mail, admin_mail, policy, packager, orchestrator)

    return _make
