"""
Command-line interface, registered on the Flask app.

Usage:
    flask --app tierback run-backups [--dry-run] [--pipeline files|database]
    flask --app tierback retention-plan [--pipeline files|database]
    flask --app tierback active-tiers [--date YYYY-MM-DD]
    flask --app tierback check-storage
"""

from datetime import date

import click
from flask import current_app
from flask.cli import with_appcontext

from tierback.config import ConfigurationError, load_settings
from tierback.backup.executor import PIPELINE_NAMES, build_runner
from tierback.backup.retention import Action
from tierback.backup.storage import StorageError, create_storage
from tierback.backup.tiers import TierLocations, TierSchedule


pipeline_option = click.option(
    '--pipeline',
    type=click.Choice(PIPELINE_NAMES),
    default=None,
    help='Restrict to one pipeline (default: all configured).'
)


def _runner(dry_run: bool = False):
    try:
        return build_runner(current_app.config, dry_run=dry_run)
    except ConfigurationError as e:
        raise click.ClickException(f"Invalid configuration: {e}")
    except StorageError as e:
        raise click.ClickException(str(e))


@click.command('run-backups')
@click.option('--dry-run', is_flag=True, help='Log what would happen without uploading or deleting.')
@pipeline_option
@with_appcontext
def run_backups_command(dry_run, pipeline):
    """Back up every source and apply retention to every tier."""
    runner = _runner(dry_run)
    try:
        summary = runner.run(pipeline)
    except ValueError as e:
        raise click.ClickException(str(e))

    for name, result in summary['pipelines'].items():
        statuses = [record['status'] for record in result['sources'].values()]
        deleted = sum(tier.get('deleted', 0) for tier in result['retention'].values())
        click.echo(
            f"{name}: {statuses.count('success')}/{len(statuses)} source(s) backed up, "
            f"{deleted} object(s) deleted"
        )

    if summary['errors']:
        for error in summary['errors']:
            click.echo(f"ERROR: {error}", err=True)
        raise click.exceptions.Exit(1)


@click.command('retention-plan')
@pipeline_option
@with_appcontext
def retention_plan_command(pipeline):
    """Show retention decisions without deleting anything."""
    runner = _runner(dry_run=True)
    try:
        plan = runner.plan(pipeline)
    except ValueError as e:
        raise click.ClickException(str(e))

    for name, tiers in plan.items():
        for tier, result in tiers.items():
            location = result['location'] or '(root)'
            if 'error' in result:
                click.echo(f"[{name}/{tier}] {location}: cannot list: {result['error']}", err=True)
                continue

            click.echo(f"[{name}/{tier}] {location}: {result['policy']}")
            for decision in result['decisions']:
                age = '-' if decision['age'] is None else decision['age']
                action = Action(decision['action']).name
                click.echo(f"  {action:<16} {age:>5}  {decision['name']}")


@click.command('active-tiers')
@click.option('--date', 'day', type=click.DateTime(formats=['%Y-%m-%d']), default=None,
              help='Day to evaluate (default: today).')
@with_appcontext
def active_tiers_command(day):
    """Print the tiers active on a day."""
    try:
        settings = load_settings(current_app.config)
    except ConfigurationError as e:
        raise click.ClickException(f"Invalid configuration: {e}")

    day = day.date() if day else date.today()
    schedule = TierSchedule(settings.weekly_day, settings.monthly_day)
    locations = TierLocations(settings.storage_prefix, settings.weekly_prefix, settings.monthly_prefix)

    for tier in schedule.active_tiers(day):
        click.echo(f"{tier.value}\t{locations.location(tier) or '(root)'}")


@click.command('check-storage')
@with_appcontext
def check_storage_command():
    """Verify the storage destination is reachable."""
    try:
        settings = load_settings(current_app.config)
        storage = create_storage(settings)
        storage.test_connection()
    except ConfigurationError as e:
        raise click.ClickException(f"Invalid configuration: {e}")
    except StorageError as e:
        raise click.ClickException(str(e))

    click.echo(f"Storage OK: {storage!r}")


def register_commands(app):
    """Attach CLI commands to the Flask app."""
    app.cli.add_command(run_backups_command)
    app.cli.add_command(retention_plan_command)
    app.cli.add_command(active_tiers_command)
    app.cli.add_command(check_storage_command)
