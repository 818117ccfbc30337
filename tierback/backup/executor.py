"""
Backup runner - orchestrates one complete backup-and-retention run.

Workflow per pipeline (files, database):
1. For each source: produce an archive in a temporary directory
2. Upload it to the daily location, plus the weekly/monthly locations on
   their calendar days (per-tier-prefix layout only)
3. Remove the local archive
4. Evaluate every tier location of the pipeline and delete what its
   retention policy rejects

Failures are isolated: a source whose archive cannot be produced is skipped,
a failed upload does not prevent the other tiers' uploads, and a location
that cannot be listed only skips that location's cleanup.
"""

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from tierback.config import Settings, load_settings
from .retention import (
    AgeUnit,
    CollapsingPolicy,
    RetentionManager,
    RetentionPolicy,
    ThresholdPolicy,
)
from .sources import ProductionError, create_producer
from .storage import ListError, TransferError, create_storage
from .tiers import Tier, TierLocations, TierSchedule

logger = logging.getLogger(__name__)

PIPELINE_NAMES = ('files', 'database')


@dataclass
class Pipeline:
    """Sources sharing one producer, one name pattern and one retention layout."""
    name: str
    sources: List[str]
    producer: Any
    layout: str
    pattern: str


def build_pipelines(settings: Settings, clock: Optional[Callable[[], datetime]] = None) -> List[Pipeline]:
    """
    Build the configured pipelines. Pipelines without sources are omitted.
    """
    pipelines = []

    if settings.files_sources:
        pipelines.append(Pipeline(
            name='files',
            sources=list(settings.files_sources),
            producer=create_producer('files', settings, clock),
            layout=settings.files_layout,
            pattern=settings.files_name_pattern
        ))

    if settings.database_sources:
        pipelines.append(Pipeline(
            name='database',
            sources=list(settings.database_sources),
            producer=create_producer('database', settings, clock),
            layout=settings.database_layout,
            pattern=settings.database_name_pattern
        ))

    return pipelines


class BackupRunner:
    """
    Runs every configured pipeline sequentially: all sources first, then
    retention for each tier location.
    """

    def __init__(
        self,
        settings: Settings,
        storage,
        pipelines: Optional[List[Pipeline]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        dry_run: bool = False
    ):
        """
        Initialize backup runner.

        Args:
            settings: Validated settings
            storage: Storage gateway (S3Storage, LocalStorage or compatible)
            pipelines: Pipelines to run (default: built from settings)
            clock: Callable returning the current instant (default: datetime.now)
            dry_run: Log what would happen without producing, uploading or deleting
        """
        self.settings = settings
        self.storage = storage
        self.clock = clock or datetime.now
        self.pipelines = pipelines if pipelines is not None else build_pipelines(settings, self.clock)
        self.dry_run = dry_run
        self.schedule = TierSchedule(settings.weekly_day, settings.monthly_day)
        self.locations = TierLocations(settings.storage_prefix, settings.weekly_prefix, settings.monthly_prefix)
        self.temp_dir = None
        self.logs = []

    def select(self, only: Optional[str]) -> List[Pipeline]:
        """
        Pick the pipelines to process.

        Raises:
            ValueError: If ``only`` names an unknown or unconfigured pipeline
        """
        if only is None:
            return self.pipelines

        selected = [pipeline for pipeline in self.pipelines if pipeline.name == only]
        if not selected:
            raise ValueError(f"Pipeline not configured: {only}")
        return selected

    def retention_policies(self, pipeline: Pipeline) -> List[Tuple[Tier, RetentionPolicy]]:
        """Tier policies for a pipeline's layout."""
        s = self.settings
        if pipeline.layout == 'tiered':
            return [
                (Tier.DAILY, ThresholdPolicy(s.daily_delete_age_days, AgeUnit.DAYS)),
                (Tier.WEEKLY, ThresholdPolicy(s.weekly_delete_age_days, AgeUnit.DAYS)),
                (Tier.MONTHLY, ThresholdPolicy(s.monthly_delete_age_months, AgeUnit.MONTHS)),
            ]
        return [
            (Tier.DAILY, CollapsingPolicy(s.collapse_daily_days, s.collapse_weekly_days, s.collapse_monthly_days)),
        ]

    def upload_tiers(self, pipeline: Pipeline, active: List[Tier]) -> List[Tier]:
        if pipeline.layout == 'tiered':
            return active
        return [Tier.DAILY]

    def run(self, only: Optional[str] = None) -> Dict[str, Any]:
        """
        Execute a full run.

        Args:
            only: Restrict the run to one pipeline ('files' or 'database')

        Returns:
            Summary dict:
            {
                'started_at': str,
                'completed_at': str,
                'dry_run': bool,
                'active_tiers': List[str],
                'pipelines': {name: {'sources': {...}, 'retention': {...}}},
                'errors': List[str],
                'logs': List[str]
            }
        """
        pipelines = self.select(only)
        now = self.clock()
        active = self.schedule.active_tiers(now.date())

        summary = {
            'started_at': now.isoformat(),
            'dry_run': self.dry_run,
            'active_tiers': [tier.value for tier in active],
            'pipelines': {},
            'errors': []
        }

        self._log(f"Weekly tier today?  {Tier.WEEKLY in active}")
        self._log(f"Monthly tier today? {Tier.MONTHLY in active}")

        self.temp_dir = tempfile.mkdtemp(prefix='tierback_', dir=self._temp_root())
        try:
            for pipeline in pipelines:
                result = self._run_pipeline(pipeline, active)
                summary['pipelines'][pipeline.name] = result
                summary['errors'].extend(result['errors'])
        finally:
            self._cleanup()

        summary['completed_at'] = self.clock().isoformat()
        self._log(f"All done. Errors: {len(summary['errors'])}")
        summary['logs'] = self.logs
        return summary

    def plan(self, only: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        """
        Evaluate retention for every tier location without deleting.

        Returns:
            {pipeline: {tier: {'location': str, 'decisions': [...]} or {'location': str, 'error': str}}}
        """
        manager = RetentionManager(self.storage, clock=self.clock, dry_run=True)
        plan = {}

        for pipeline in self.select(only):
            tiers = {}
            for tier, policy in self.retention_policies(pipeline):
                location = self.locations.location(tier)
                try:
                    decisions = manager.plan(location, policy, pipeline.pattern)
                    tiers[tier.value] = {
                        'location': location,
                        'policy': policy.describe(),
                        'decisions': [decision.to_dict() for decision in decisions]
                    }
                except ListError as e:
                    tiers[tier.value] = {'location': location, 'error': str(e)}
            plan[pipeline.name] = tiers

        return plan

    def _run_pipeline(self, pipeline: Pipeline, active: List[Tier]) -> Dict[str, Any]:
        result = {'layout': pipeline.layout, 'sources': {}, 'retention': {}, 'errors': []}
        tiers = self.upload_tiers(pipeline, active)

        try:
            for source in pipeline.sources:
                record = self._backup_source(pipeline, source, tiers)
                result['sources'][source] = record
                result['errors'].extend(record['errors'])
        finally:
            pipeline.producer.cleanup()

        retention = self._enforce_retention(pipeline)
        result['retention'] = retention
        for tier_result in retention.values():
            result['errors'].extend(tier_result.get('errors', []))

        return result

    def _backup_source(self, pipeline: Pipeline, source: str, tiers: List[Tier]) -> Dict[str, Any]:
        """
        Produce and upload one source. Never raises for expected failures.
        """
        record = {'status': 'success', 'archive': None, 'uploads': {}, 'errors': []}
        self._log(f"--- Starting {pipeline.name} backup for: {source} ---")

        if self.dry_run:
            targets = ', '.join(self.locations.location(tier) or '(root)' for tier in tiers)
            self._log(f"Dry run: would back up {source} to {targets}")
            record['status'] = 'skipped'
            return record

        try:
            archive_path = pipeline.producer.produce(source, self.temp_dir)
        except ProductionError as e:
            return self._fail_source(record, f"Backup failed for {source}: {e}")
        except Exception as e:
            logger.exception("Unexpected error producing %s", source)
            return self._fail_source(record, f"Backup failed for {source}: {e}")

        record['archive'] = os.path.basename(archive_path)
        self._log(f"Archive created: {record['archive']}")

        for tier in tiers:
            location = self.locations.location(tier)
            try:
                key = self.storage.upload(archive_path, location)
                record['uploads'][tier.value] = key
                self._log(f"Uploaded {tier.value.upper()}: {key}")
            except TransferError as e:
                error_msg = f"Upload of {record['archive']} to {tier.value} failed: {e}"
                self._log(error_msg, level=logging.ERROR)
                record['errors'].append(error_msg)
                record['status'] = 'partial'

        if not record['uploads']:
            record['status'] = 'failed'

        self._remove(archive_path)
        self._log(f"--- Backup for {source} finished ({record['status']}) ---")
        return record

    def _fail_source(self, record: Dict[str, Any], message: str) -> Dict[str, Any]:
        self._log(message, level=logging.ERROR)
        record['status'] = 'failed'
        record['errors'].append(message)
        return record

    def _enforce_retention(self, pipeline: Pipeline) -> Dict[str, Dict[str, Any]]:
        results = {}

        for tier, policy in self.retention_policies(pipeline):
            location = self.locations.location(tier)
            label = f"{pipeline.name} {tier.value.upper()}"
            manager = RetentionManager(self.storage, clock=self.clock, dry_run=self.dry_run)

            error_msg = None
            try:
                results[tier.value] = manager.enforce(location, policy, pipeline.pattern, label)
            except ListError as e:
                error_msg = f"Cleanup of {label} skipped, cannot list {location or '(root)'}: {e}"
                results[tier.value] = {'location': location, 'errors': [error_msg]}

            self.logs.extend(manager.logs)
            if error_msg:
                self._log(error_msg, level=logging.ERROR)

        return results

    def _temp_root(self) -> Optional[str]:
        if not self.settings.temp_dir:
            return None
        os.makedirs(self.settings.temp_dir, exist_ok=True)
        return self.settings.temp_dir

    def _remove(self, path: str):
        try:
            os.remove(path)
        except OSError as e:
            self._log(f"Warning: Failed to remove local archive {path}: {e}", level=logging.WARNING)

    def _cleanup(self):
        """Remove the temporary directory."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            shutil.rmtree(self.temp_dir, ignore_errors=True)
        self.temp_dir = None

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def build_runner(cfg: Mapping[str, Any], dry_run: bool = False,
                 clock: Optional[Callable[[], datetime]] = None) -> BackupRunner:
    """
    Build a runner from a config mapping.

    Args:
        cfg: Flask app.config or any mapping with the Config keys
        dry_run: Log decisions without side effects
        clock: Optional clock override

    Returns:
        BackupRunner ready to run

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    settings = load_settings(cfg)
    storage = create_storage(settings)
    return BackupRunner(settings, storage, clock=clock, dry_run=dry_run)


def run_backups(cfg: Mapping[str, Any], only: Optional[str] = None, dry_run: bool = False) -> Dict[str, Any]:
    """
    Validate configuration and execute one run.

    This function is what the scheduler calls.

    Raises:
        ConfigurationError: If the configuration is invalid; nothing runs
    """
    runner = build_runner(cfg, dry_run=dry_run)
    return runner.run(only)
