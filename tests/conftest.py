"""
Shared pytest fixtures for Tierback tests.

This module provides fixtures for:
- Flask app, test client and CLI runner
- Config mappings and validated Settings
- Storage gateways (local directory, moto-mocked S3)
- Source directories and fake producers
- Fixed clocks
"""

import os
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from tierback import create_app
from tierback.config import TestingConfig, load_settings
from tierback.backup.sources import ProductionError
from tierback.backup.storage import LocalStorage


def fixed_clock(*args):
    """Clock returning a constant UTC instant."""
    instant = datetime(*args, tzinfo=timezone.utc)
    return lambda: instant


def config_mapping(tmp_path, **overrides):
    """
    Build a config mapping from TestingConfig with temp directories.
    """
    mapping = {
        key: getattr(TestingConfig, key)
        for key in dir(TestingConfig)
        if key.isupper()
    }
    mapping.update({
        'FILES_SOURCES': '',
        'DATABASE_SOURCES': 'prod_hub',
        'STORAGE_BACKEND': 'local',
        'LOCAL_STORAGE_DIR': str(tmp_path / 'storage'),
        'TEMP_DIR': str(tmp_path / 'temp'),
        'LOG_DIR': str(tmp_path / 'logs'),
    })
    mapping.update(overrides)
    return mapping


@pytest.fixture
def make_config(tmp_path):
    """Factory for config mappings rooted in tmp_path."""
    def _make(**overrides):
        return config_mapping(tmp_path, **overrides)
    return _make


@pytest.fixture
def settings(make_config):
    """Validated settings for one database source on local storage."""
    return load_settings(make_config())


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Storage is a local directory under tmp_path; the scheduler is disabled.
    """
    app = create_app('testing', overrides=config_mapping(tmp_path))
    yield app


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def local_storage(tmp_path):
    """LocalStorage rooted in tmp_path/storage."""
    return LocalStorage(str(tmp_path / 'storage'))


def seed_storage(storage_root, keys):
    """Create empty-ish objects for the given keys under a LocalStorage root."""
    for key in keys:
        path = Path(storage_root) / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b'backup')


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def site_dirs(tmp_path):
    """
    Create two site directories to back up.

    Creates:
    - sites/bubbelbubbel/index.php
    - sites/bubbelbubbel/wp-content/uploads/logo.png
    - sites/centipod/index.php
    """
    root = tmp_path / 'sites'
    bubbel = root / 'bubbelbubbel'
    (bubbel / 'wp-content' / 'uploads').mkdir(parents=True)
    (bubbel / 'index.php').write_text('<?php echo "bubbel";')
    (bubbel / 'wp-content' / 'uploads' / 'logo.png').write_bytes(b'\x89PNG')

    centipod = root / 'centipod'
    centipod.mkdir()
    (centipod / 'index.php').write_text('<?php echo "centipod";')

    return [str(bubbel), str(centipod)]


class FakeProducer:
    """
    Producer writing a small file named like a real database archive.

    Sources listed in ``failing`` raise ProductionError.
    """

    kind = 'backup'

    def __init__(self, stamp='2024-06-01-03-00-00', failing=()):
        self.stamp = stamp
        self.failing = set(failing)
        self.produced = []
        self.cleaned_up = False

    def produce(self, source, dest_dir):
        if source in self.failing:
            raise ProductionError(f"Backup failed for {source}. Output file is empty or missing.")
        path = os.path.join(dest_dir, f"{source}-backup-{self.stamp}.sql.gz")
        with open(path, 'wb') as f:
            f.write(b'dump')
        self.produced.append(path)
        return path

    def cleanup(self):
        self.cleaned_up = True


@pytest.fixture
def fake_producer():
    return FakeProducer()


@pytest.fixture
def failing_storage():
    """MagicMock gateway whose methods can be given side effects per test."""
    storage = MagicMock()
    storage.list.return_value = []
    return storage
