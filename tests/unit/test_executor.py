"""
Unit tests for the backup runner (tierback/backup/executor.py).

Tests tier uploads, failure isolation, retention per tier and dry runs.
"""

import os
from unittest.mock import MagicMock

import pytest

from tierback.config import ConfigurationError, load_settings
from tierback.backup.executor import (
    BackupRunner,
    Pipeline,
    build_pipelines,
    build_runner,
    run_backups
)
from tierback.backup.retention import CollapsingPolicy, ThresholdPolicy, AgeUnit
from tierback.backup.storage import (
    ListError,
    LocalStorage,
    TransferError,
    build_key
)
from tierback.backup.tiers import Tier
from tests.conftest import FakeProducer, fixed_clock, seed_storage


# 2024-06-04 is a Tuesday, 2024-06-01 a Saturday and the 1st
TUESDAY = (2024, 6, 4, 3, 0, 0)
SATURDAY_FIRST = (2024, 6, 1, 3, 0, 0)


def _database_pipeline(producer, sources=('prod_hub', 'analytics'), layout='tiered'):
    return Pipeline('database', list(sources), producer, layout, '*.sql.gz')


def _runner(settings, storage, pipelines, when=TUESDAY, dry_run=False):
    return BackupRunner(settings, storage, pipelines=pipelines, clock=fixed_clock(*when), dry_run=dry_run)


class TestBuildPipelines:
    """Test pipeline construction from settings."""

    def test_only_configured_pipelines(self, settings):
        pipelines = build_pipelines(settings)

        assert [p.name for p in pipelines] == ['database']
        assert pipelines[0].sources == ['prod_hub']
        assert pipelines[0].layout == 'tiered'
        assert pipelines[0].pattern == '*.sql.gz'

    def test_both_pipelines(self, make_config, site_dirs):
        settings = load_settings(make_config(FILES_SOURCES=','.join(site_dirs)))

        pipelines = build_pipelines(settings)

        assert [p.name for p in pipelines] == ['files', 'database']
        assert pipelines[0].layout == 'collapsing'
        assert pipelines[0].pattern == '*-files-*.tar.gz'


class TestRetentionPolicies:

    def test_tiered(self, settings, local_storage):
        runner = _runner(settings, local_storage, [])
        policies = runner.retention_policies(_database_pipeline(FakeProducer()))

        assert policies == [
            (Tier.DAILY, ThresholdPolicy(8, AgeUnit.DAYS)),
            (Tier.WEEKLY, ThresholdPolicy(35, AgeUnit.DAYS)),
            (Tier.MONTHLY, ThresholdPolicy(6, AgeUnit.MONTHS)),
        ]

    def test_collapsing(self, settings, local_storage):
        runner = _runner(settings, local_storage, [])
        policies = runner.retention_policies(_database_pipeline(FakeProducer(), layout='collapsing'))

        assert policies == [(Tier.DAILY, CollapsingPolicy(7, 28, 180))]


class TestBackupRunner:
    """Test complete runs against local storage."""

    def test_ordinary_day_uploads_daily_only(self, settings, local_storage):
        """Test a non-calendar day only writes the daily location."""
        producer = FakeProducer(stamp='2024-06-04-03-00-00')
        runner = _runner(settings, local_storage, [_database_pipeline(producer)])

        summary = runner.run()

        assert summary['errors'] == []
        assert summary['active_tiers'] == ['daily']
        assert local_storage.list('') == [
            'analytics-backup-2024-06-04-03-00-00.sql.gz',
            'prod_hub-backup-2024-06-04-03-00-00.sql.gz',
        ]
        assert local_storage.list('weekly') == []
        assert local_storage.list('monthly') == []

        record = summary['pipelines']['database']['sources']['prod_hub']
        assert record['status'] == 'success'
        assert record['uploads'] == {'daily': 'prod_hub-backup-2024-06-04-03-00-00.sql.gz'}

    def test_calendar_day_uploads_all_tiers(self, settings, local_storage):
        """Test a Saturday that is also the 1st writes all three locations."""
        producer = FakeProducer(stamp='2024-06-01-03-00-00')
        runner = _runner(settings, local_storage, [_database_pipeline(producer, ['prod_hub'])], SATURDAY_FIRST)

        summary = runner.run()

        assert summary['active_tiers'] == ['daily', 'weekly', 'monthly']
        assert local_storage.list('') == ['prod_hub-backup-2024-06-01-03-00-00.sql.gz']
        assert local_storage.list('weekly') == ['weekly/prod_hub-backup-2024-06-01-03-00-00.sql.gz']
        assert local_storage.list('monthly') == ['monthly/prod_hub-backup-2024-06-01-03-00-00.sql.gz']
        assert any('Weekly tier today?  True' in line for line in summary['logs'])

    def test_retention_runs_for_every_tier(self, settings, local_storage):
        """Test expired objects are removed from each tier, fresh ones kept."""
        seed_storage(local_storage.base_path, [
            'prod_hub-backup-2024-05-20-03-00-00.sql.gz',           # 15d, daily limit 8
            'prod_hub-backup-2024-05-30-03-00-00.sql.gz',           # 5d
            'weekly/prod_hub-backup-2024-04-20-03-00-00.sql.gz',    # 45d, weekly limit 35
            'weekly/prod_hub-backup-2024-05-25-03-00-00.sql.gz',
            'monthly/prod_hub-backup-2023-12-01-03-00-00.sql.gz',   # 6 months
            'monthly/prod_hub-backup-2024-01-01-03-00-00.sql.gz',   # 5 months
        ])
        producer = FakeProducer(stamp='2024-06-04-03-00-00')
        runner = _runner(settings, local_storage, [_database_pipeline(producer, ['prod_hub'])])

        summary = runner.run()

        assert local_storage.list('') == [
            'prod_hub-backup-2024-05-30-03-00-00.sql.gz',
            'prod_hub-backup-2024-06-04-03-00-00.sql.gz',
        ]
        assert local_storage.list('weekly') == ['weekly/prod_hub-backup-2024-05-25-03-00-00.sql.gz']
        assert local_storage.list('monthly') == ['monthly/prod_hub-backup-2024-01-01-03-00-00.sql.gz']

        retention = summary['pipelines']['database']['retention']
        assert retention['daily']['deleted'] == 1
        assert retention['weekly']['deleted'] == 1
        assert retention['monthly']['deleted'] == 1

    def test_production_failure_skips_source_only(self, settings, local_storage):
        """Test one failing dump does not stop the next source."""
        producer = FakeProducer(stamp='2024-06-04-03-00-00', failing=['prod_hub'])
        runner = _runner(settings, local_storage, [_database_pipeline(producer)])

        summary = runner.run()

        sources = summary['pipelines']['database']['sources']
        assert sources['prod_hub']['status'] == 'failed'
        assert sources['analytics']['status'] == 'success'
        assert local_storage.list('') == ['analytics-backup-2024-06-04-03-00-00.sql.gz']
        assert len(summary['errors']) == 1
        assert 'Output file is empty or missing' in summary['errors'][0]

    def test_unexpected_producer_error_is_isolated(self, settings, local_storage):
        producer = MagicMock()
        producer.produce.side_effect = RuntimeError('disk on fire')
        runner = _runner(settings, local_storage, [_database_pipeline(producer, ['prod_hub'])])

        summary = runner.run()

        assert summary['pipelines']['database']['sources']['prod_hub']['status'] == 'failed'
        assert 'disk on fire' in summary['errors'][0]
        producer.cleanup.assert_called_once()

    def test_upload_failure_does_not_block_other_tiers(self, settings, failing_storage):
        """Test a failed weekly upload still lets daily and monthly proceed."""
        def upload(local_path, location):
            if location == 'weekly':
                raise TransferError('connection reset')
            return build_key(location, os.path.basename(local_path))

        failing_storage.upload.side_effect = upload
        producer = FakeProducer(stamp='2024-06-01-03-00-00')
        runner = _runner(settings, failing_storage, [_database_pipeline(producer, ['prod_hub'])], SATURDAY_FIRST)

        summary = runner.run()

        record = summary['pipelines']['database']['sources']['prod_hub']
        assert record['status'] == 'partial'
        assert set(record['uploads']) == {'daily', 'monthly'}
        assert failing_storage.upload.call_count == 3
        assert any('connection reset' in error for error in summary['errors'])

    def test_all_uploads_failing_marks_source_failed(self, settings, failing_storage):
        failing_storage.upload.side_effect = TransferError('bucket gone')
        runner = _runner(settings, failing_storage, [_database_pipeline(FakeProducer(), ['prod_hub'])])

        summary = runner.run()

        assert summary['pipelines']['database']['sources']['prod_hub']['status'] == 'failed'

    def test_list_failure_skips_only_that_tier(self, settings, failing_storage):
        """Test a location that cannot be listed does not block the others."""
        def list_location(location, pattern=None):
            if location == 'weekly':
                raise ListError('access denied')
            return ['prod_hub-backup-2020-01-01-03-00-00.sql.gz']

        failing_storage.upload.side_effect = lambda path, location: build_key(location, os.path.basename(path))
        failing_storage.list.side_effect = list_location
        runner = _runner(settings, failing_storage, [_database_pipeline(FakeProducer(), ['prod_hub'])])

        summary = runner.run()

        retention = summary['pipelines']['database']['retention']
        assert 'access denied' in retention['weekly']['errors'][0]
        assert retention['daily']['deleted'] == 1
        assert retention['monthly']['deleted'] == 1
        assert any('cannot list weekly' in error for error in summary['errors'])

    def test_local_archives_removed(self, settings, local_storage):
        producer = FakeProducer(stamp='2024-06-04-03-00-00')
        runner = _runner(settings, local_storage, [_database_pipeline(producer)])

        runner.run()

        assert all(not os.path.exists(path) for path in producer.produced)
        assert os.listdir(settings.temp_dir) == []
        assert producer.cleaned_up

    def test_collapsing_layout_uploads_root_only(self, settings, local_storage):
        """Test the shared-prefix layout never writes tier subdirectories."""
        seed_storage(local_storage.base_path, [
            'prod_hub-backup-2024-05-20-03-00-00.sql.gz',   # week 21, older
            'prod_hub-backup-2024-05-21-03-00-00.sql.gz',   # week 21, kept
            'prod_hub-backup-2023-01-01-03-00-00.sql.gz',   # too old
        ])
        producer = FakeProducer(stamp='2024-06-01-03-00-00')
        pipeline = _database_pipeline(producer, ['prod_hub'], layout='collapsing')
        runner = _runner(settings, local_storage, [pipeline], SATURDAY_FIRST)

        summary = runner.run()

        assert local_storage.list('weekly') == []
        assert local_storage.list('') == [
            'prod_hub-backup-2024-05-21-03-00-00.sql.gz',
            'prod_hub-backup-2024-06-01-03-00-00.sql.gz',
        ]
        assert list(summary['pipelines']['database']['retention']) == ['daily']

    def test_dry_run_changes_nothing(self, settings, local_storage):
        """Test a dry run neither produces, uploads nor deletes."""
        seed_storage(local_storage.base_path, ['prod_hub-backup-2020-01-01-03-00-00.sql.gz'])
        producer = FakeProducer()
        runner = _runner(settings, local_storage, [_database_pipeline(producer, ['prod_hub'])], dry_run=True)

        summary = runner.run()

        assert summary['dry_run'] is True
        assert producer.produced == []
        assert summary['pipelines']['database']['sources']['prod_hub']['status'] == 'skipped'
        assert local_storage.list('') == ['prod_hub-backup-2020-01-01-03-00-00.sql.gz']
        assert any('Dry run: 1 object(s) would be deleted' in line for line in summary['logs'])

    def test_select(self, settings, local_storage):
        runner = _runner(settings, local_storage, [_database_pipeline(FakeProducer())])

        assert [p.name for p in runner.select(None)] == ['database']
        assert [p.name for p in runner.select('database')] == ['database']
        with pytest.raises(ValueError, match='Pipeline not configured: files'):
            runner.select('files')

    def test_plan(self, settings, local_storage):
        """Test planning reports decisions per tier without deleting."""
        seed_storage(local_storage.base_path, [
            'prod_hub-backup-2020-01-01-03-00-00.sql.gz',
            'weekly/prod_hub-backup-2024-06-01-03-00-00.sql.gz',
        ])
        runner = _runner(settings, local_storage, [_database_pipeline(FakeProducer())])

        plan = runner.plan()

        daily = plan['database']['daily']
        assert daily['location'] == ''
        assert daily['policy'] == 'delete age >= 8 days'
        assert [d['action'] for d in daily['decisions']] == ['delete']
        assert [d['action'] for d in plan['database']['weekly']['decisions']] == ['keep']
        assert plan['database']['monthly']['decisions'] == []
        assert len(local_storage.list('')) == 1

    def test_plan_reports_list_errors(self, settings, failing_storage):
        failing_storage.list.side_effect = ListError('timeout')
        runner = _runner(settings, failing_storage, [_database_pipeline(FakeProducer())])

        plan = runner.plan('database')

        assert plan['database']['daily'] == {'location': '', 'error': 'timeout'}


class TestBuildRunner:

    def test_build_runner(self, make_config):
        runner = build_runner(make_config(), dry_run=True)

        assert isinstance(runner.storage, LocalStorage)
        assert runner.dry_run is True
        assert [p.name for p in runner.pipelines] == ['database']

    def test_invalid_configuration(self, make_config):
        with pytest.raises(ConfigurationError):
            build_runner(make_config(DATABASE_SOURCES=''))

    def test_run_backups_dry_run(self, make_config):
        summary = run_backups(make_config(), dry_run=True)

        assert summary['errors'] == []
        assert summary['pipelines']['database']['sources']['prod_hub']['status'] == 'skipped'
