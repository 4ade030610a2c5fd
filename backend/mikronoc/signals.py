"""
Router lifecycle signals.

The poll scheduler emits these from its coordinator thread after the outcome
of a poll has been committed. Receivers get the router id as sender and the
keyword arguments listed below.
"""
import logging

from blinker import Namespace

logger = logging.getLogger(__name__)

noc_signals = Namespace()

# kwargs: tenant_id, failures, at
router_recovered = noc_signals.signal('router-recovered')
# kwargs: tenant_id, error, kind, at
router_down = noc_signals.signal('router-down')
# kwargs: incident (dict), action ('opened'|'resolved'|'escalated')
incident_changed = noc_signals.signal('incident-changed')


def _log_recovered(router_id, **extra):
    logger.info(
        'Router %s recovered after %s consecutive failed polls',
        router_id,
        extra.get('failures'),
    )


def _log_down(router_id, **extra):
    logger.warning('Router %s went offline (%s): %s', router_id, extra.get('kind'), extra.get('error'))


def _log_incident(sender, **extra):
    incident = extra.get('incident') or {}
    logger.info(
        'Incident %s %s for router %s (%s)',
        incident.get('id'),
        extra.get('action'),
        incident.get('router_id'),
        incident.get('incident_type'),
    )


def connect_default_receivers():
    """Attach the logging receivers. Safe to call once per app factory run."""
    router_recovered.connect(_log_recovered, weak=False)
    router_down.connect(_log_down, weak=False)
    incident_changed.connect(_log_incident, weak=False)
