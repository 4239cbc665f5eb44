"""Test helpers shared across the test suite."""

from tests.helpers.fakes import (
    BASE_TIME,
    CountingBackend,
    FakeAssetStore,
    FakeNotifier,
    FakePackager,
    export_csv,
)

__all__ = [
    "BASE_TIME",
    "CountingBackend",
    "FakeAssetStore",
    "FakeNotifier",
    "FakePackager",
    "export_csv",
]
