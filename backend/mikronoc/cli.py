"""
Operator commands: `flask noc poll-once`, `flask noc poll-loop`, `flask noc live-loop`.
"""
import json
import signal
import threading

import click
from flask import current_app
from flask.cli import AppGroup

from mikronoc.models import MikroTikRouter
from mikronoc.services import wallboard
from mikronoc.services.live_counters import LiveCounterService
from mikronoc.services.noc_service import get_live_service
from mikronoc.services.poll_scheduler import PollScheduler
from mikronoc.services.router_client import RouterTarget

noc_cli = AppGroup('noc', help='MikroTik NOC polling commands.')


def _stop_event_on_signals() -> threading.Event:
    stop_event = threading.Event()

    def _stop(signum, _frame):
        click.echo(f'Received signal {signum}, stopping...')
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    return stop_event


def live_targets(service: LiveCounterService = None):
    """(target, tracked names) for every enabled router that has wallboard slots."""
    routers = MikroTikRouter.query.filter_by(enabled=True).all()
    tracked_by_tenant = {}
    floors = {}
    targets = []
    for router in routers:
        if router.tenant_id not in tracked_by_tenant:
            tracked_by_tenant[router.tenant_id] = wallboard.tracked_interfaces_by_router(router.tenant_id)
            floors.update(wallboard.slot_floors(router.tenant_id))
        names = tracked_by_tenant[router.tenant_id].get(router.id)
        if not names or router.in_maintenance():
            continue
        targets.append((RouterTarget.from_router(router), names))
    if service is not None:
        service.set_floors(floors)
    return targets


@noc_cli.command('poll-once')
def poll_once():
    """Run a single polling tick and print its summary."""
    scheduler = PollScheduler(current_app._get_current_object())
    try:
        report = scheduler.run_once()
    finally:
        scheduler.shutdown()
    click.echo(json.dumps(report.to_dict(), indent=2, default=str))


@noc_cli.command('poll-loop')
@click.option('--interval', type=float, default=None, help='Seconds between ticks (defaults to MIKROTIK_POLL_INTERVAL_SECS).')
def poll_loop(interval):
    """Poll routers until interrupted."""
    scheduler = PollScheduler(current_app._get_current_object(), interval=interval)
    scheduler.run_forever(_stop_event_on_signals())


@noc_cli.command('live-loop')
@click.option('--interval', type=float, default=None, help='Seconds between ticks (defaults to MIKROTIK_LIVE_POLL_INTERVAL_SECS).')
def live_loop(interval):
    """Feed the live counter rings for wallboard interfaces until interrupted."""
    app = current_app._get_current_object()
    service: LiveCounterService = get_live_service(app)
    interval = interval or float(app.config.get('MIKROTIK_LIVE_POLL_INTERVAL_SECS', 1))
    click.echo(f'Live counter loop every {interval}s')
    service.run_forever(lambda: live_targets(service), _stop_event_on_signals(), interval=interval)
