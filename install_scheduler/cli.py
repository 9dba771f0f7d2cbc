"""
Command-line interface for installation conflict management.
Snapshot files are JSON objects holding a `snapshot` and a `date_range`.
"""

import asyncio
import json
import logging
from datetime import date
from pathlib import Path
from typing import Optional

import click
import uvicorn

from .schemas import AutoResolveRequest, DetectRequest, ProposeRequest
from .service import ConflictService


logger = logging.getLogger(__name__)


@click.group()
@click.option('--config', default='config/params.yaml', help='Configuration file path')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def main(ctx, config: str, verbose: bool):
    """Installation Conflict Engine CLI."""
    # Setup logging
    log_level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # Store config path in context
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config


def _load_request(input_file: str, start: Optional[str], end: Optional[str]) -> DetectRequest:
    """Read a snapshot file; --start/--end override its date range."""
    with open(input_file, 'r') as f:
        data = json.load(f)
    if 'snapshot' not in data:
        data = {'snapshot': data}
    date_range = dict(data.get('date_range') or {})
    if start:
        date_range['start'] = start
    if end:
        date_range['end'] = end
    if not date_range:
        today = date.today().isoformat()
        date_range = {'start': today, 'end': today}
    elif 'end' not in date_range:
        date_range['end'] = date_range['start']
    data['date_range'] = date_range
    return DetectRequest(**data)


@main.command()
@click.argument('input_file', type=click.Path(exists=True))
@click.option('--start', default=None, help='First day to check (YYYY-MM-DD)')
@click.option('--end', default=None, help='Last day to check (YYYY-MM-DD)')
@click.option('--json-output', is_flag=True, help='Print the raw JSON response')
@click.pass_context
def detect(ctx, input_file: str, start: str, end: str, json_output: bool):
    """Detect scheduling conflicts in a snapshot file."""

    async def _detect():
        service = ConflictService(ctx.obj['config_path'])

        try:
            response = await service.detect(_load_request(input_file, start, end))

            if json_output:
                click.echo(response.model_dump_json(indent=2))
                return

            click.echo(f"{response.organization_id}/{response.project_id} v{response.version}: "
                       f"{len(response.conflicts)} conflicts")
            for conflict in response.conflicts:
                auto = " [auto]" if conflict.auto_resolvable else ""
                click.echo(f"  {conflict.severity.value:<8} {conflict.id}{auto}")
                click.echo(f"           {conflict.description}")

        except Exception as e:
            logger.error(f"Detection failed: {e}")
            raise click.ClickException(str(e))
        finally:
            await service.close()

    asyncio.run(_detect())


@main.command()
@click.argument('input_file', type=click.Path(exists=True))
@click.argument('conflict_id')
@click.option('--start', default=None, help='First day to check (YYYY-MM-DD)')
@click.option('--end', default=None, help='Last day to check (YYYY-MM-DD)')
@click.pass_context
def propose(ctx, input_file: str, conflict_id: str, start: str, end: str):
    """List candidate resolutions for one conflict, best first."""

    async def _propose():
        service = ConflictService(ctx.obj['config_path'])

        try:
            base = _load_request(input_file, start, end)
            response = await service.propose(ProposeRequest(
                snapshot=base.snapshot, date_range=base.date_range, conflict_id=conflict_id
            ))

            click.echo(f"{response.conflict.id}: {response.conflict.description}")
            if not response.resolutions:
                click.echo("No safe resolution; needs manual review.")
            for i, resolution in enumerate(response.resolutions, 1):
                impact = resolution.impact
                click.echo(f"  {i}. [{resolution.disruption_score:.2f}] {resolution.description}")
                if impact:
                    click.echo(f"     touches {impact.assignments_touched} assignment(s), "
                               f"travel {impact.travel_km_delta:+.1f} km, "
                               f"{impact.new_conflict_count} lesser side conflict(s)")

        except Exception as e:
            logger.error(f"Proposal failed: {e}")
            raise click.ClickException(str(e))
        finally:
            await service.close()

    asyncio.run(_propose())


@main.command('auto-resolve')
@click.argument('input_file', type=click.Path(exists=True))
@click.option('--start', default=None, help='First day to check (YYYY-MM-DD)')
@click.option('--end', default=None, help='Last day to check (YYYY-MM-DD)')
@click.option('--output', default=None, help='Write the updated snapshot file here')
@click.option('--resolver', default='auto-resolver', help='Name recorded in resolution history')
@click.pass_context
def auto_resolve(ctx, input_file: str, start: str, end: str, output: str, resolver: str):
    """Apply every safe automatic fix and record it in history."""

    async def _auto_resolve():
        service = ConflictService(ctx.obj['config_path'])

        try:
            base = _load_request(input_file, start, end)
            response = await service.auto_resolve(AutoResolveRequest(
                snapshot=base.snapshot, date_range=base.date_range, applied_by=resolver
            ))

            click.echo(f"Resolved {len(response.history)} conflict(s); "
                       f"snapshot now at v{response.snapshot.version}")
            for entry in response.history:
                click.echo(f"  + {entry.conflict.id}: {entry.resolution.description}")
            for skipped in response.skipped:
                click.echo(f"  - {skipped.conflict_id}: {skipped.reason}")

            if output:
                out_path = Path(output)
                out_path.parent.mkdir(parents=True, exist_ok=True)
                payload = {
                    'snapshot': json.loads(response.snapshot.model_dump_json()),
                    'date_range': json.loads(base.date_range.model_dump_json()),
                }
                with open(out_path, 'w') as f:
                    json.dump(payload, f, indent=2)
                click.echo(f"Updated snapshot saved to: {out_path}")

        except Exception as e:
            logger.error(f"Auto-resolve failed: {e}")
            raise click.ClickException(str(e))
        finally:
            await service.close()

    asyncio.run(_auto_resolve())


@main.command()
@click.option('--org', 'organization_id', default='default', help='Organization id')
@click.option('--project', 'project_id', default='default', help='Project id')
@click.pass_context
def analytics(ctx, organization_id: str, project_id: str):
    """Summarize stored resolution history for a project."""

    async def _analytics():
        service = ConflictService(ctx.obj['config_path'])

        try:
            summary = service.summarize(organization_id, project_id)

            click.echo(f"Conflicts: {summary.total_conflicts}  resolved: {summary.resolved_conflicts}  "
                       f"success rate: {summary.resolution_success_rate:.1f}%")
            click.echo(f"Average time to resolve: {summary.average_resolution_time:.1f} min")
            for kind, count in summary.conflicts_by_type.items():
                click.echo(f"  {kind}: {count}")
            if summary.prevention_recommendations:
                click.echo("\nRecommendations:")
                for hint in summary.prevention_recommendations:
                    click.echo(f"  - {hint}")

        except Exception as e:
            logger.error(f"Analytics failed: {e}")
            raise click.ClickException(str(e))
        finally:
            await service.close()

    asyncio.run(_analytics())


@main.command()
@click.option('--host', default='0.0.0.0', help='Bind address')
@click.option('--port', default=8000, type=int, help='Port')
@click.pass_context
def serve(ctx, host: str, port: int):
    """Start the FastAPI server."""
    from .api import create_app

    try:
        app = create_app(ConflictService(ctx.obj['config_path']))

        click.echo("Starting Installation Conflict API server...")
        click.echo(f"API documentation: http://localhost:{port}/docs")

        uvicorn.run(app, host=host, port=port)

    except Exception as e:
        logger.error(f"Server failed to start: {e}")
        raise click.ClickException(str(e))


if __name__ == '__main__':
    main()
