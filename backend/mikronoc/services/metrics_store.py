"""
Metrics Store
Append-only router and interface samples with windowed reads and
presentation-side downsampling.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, or_

from mikronoc import db
from mikronoc.models import InterfaceMetricSample, RouterMetricSample

logger = logging.getLogger(__name__)

BUCKET_RAW = 'raw'
BUCKET_HOUR = 'hour'
BUCKET_DAY = 'day'

RAW_MAX_RANGE = timedelta(days=2)
HOURLY_MAX_RANGE = timedelta(days=14)
DEFAULT_LIMIT = 1000
MAX_LIMIT = 10000


def choose_bucket(start: datetime, end: datetime) -> str:
    """raw detail up to 2 days, hourly up to 14 days, daily beyond."""
    span = end - start
    if span <= RAW_MAX_RANGE:
        return BUCKET_RAW
    if span <= HOURLY_MAX_RANGE:
        return BUCKET_HOUR
    return BUCKET_DAY


def bucket_key(ts: datetime, bucket: str) -> datetime:
    if bucket == BUCKET_HOUR:
        return ts.replace(minute=0, second=0, microsecond=0)
    if bucket == BUCKET_DAY:
        return ts.replace(hour=0, minute=0, second=0, microsecond=0)
    return ts


def _numeric_fields(sample: Any) -> Sequence[str]:
    return getattr(sample, 'NUMERIC_FIELDS', ())


def downsample(samples: Sequence[Any], bucket: str) -> List[Dict[str, Any]]:
    """
    Average every numeric field of the samples sharing a bucket key.

    The bucket's timestamp is the timestamp of its last sample. Samples must be
    ordered oldest first. Missing buckets are not synthesized.
    """
    grouped: 'OrderedDict[datetime, List[Any]]' = OrderedDict()
    for sample in samples:
        grouped.setdefault(bucket_key(sample.ts, bucket), []).append(sample)

    points = []
    for key, members in grouped.items():
        last = members[-1]
        point: Dict[str, Any] = {
            'ts': last.ts,
            'bucket_start': key,
            'samples': len(members),
        }
        for name in _numeric_fields(last):
            values = [getattr(member, name) for member in members if getattr(member, name) is not None]
            point[name] = (sum(values) / len(values)) if values else None
        for name in ('running', 'disabled'):
            if hasattr(last, name):
                point[name] = getattr(last, name)
        points.append(point)
    return points


def _clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_LIMIT
    return max(1, min(MAX_LIMIT, int(limit)))


class MetricsStore:
    """Thin repository over the metric tables. Writers commit through the caller."""

    def __init__(self, session=None):
        self.session = session or db.session

    # ==================== WRITE ====================

    def append(self, sample: RouterMetricSample) -> RouterMetricSample:
        self.session.add(sample)
        return sample

    def append_interface(self, sample: InterfaceMetricSample) -> InterfaceMetricSample:
        self.session.add(sample)
        return sample

    def prune(self, before: datetime) -> Tuple[int, int]:
        """Delete samples older than `before`. Returns (router rows, interface rows)."""
        router_rows = RouterMetricSample.query.filter(
            RouterMetricSample.ts < before
        ).delete(synchronize_session=False)
        interface_rows = InterfaceMetricSample.query.filter(
            InterfaceMetricSample.ts < before
        ).delete(synchronize_session=False)
        self.session.commit()
        logger.info(
            'Pruned %s router samples and %s interface samples older than %s',
            router_rows,
            interface_rows,
            before.isoformat(),
        )
        return router_rows, interface_rows

    # ==================== READ ====================

    def latest(self, router_id: int) -> Optional[RouterMetricSample]:
        return (
            RouterMetricSample.query.filter_by(router_id=router_id)
            .order_by(RouterMetricSample.ts.desc(), RouterMetricSample.id.desc())
            .first()
        )

    def latest_interfaces(self, router_id: int) -> List[InterfaceMetricSample]:
        newest = (
            self.session.query(
                InterfaceMetricSample.interface_name.label('interface_name'),
                func.max(InterfaceMetricSample.ts).label('ts'),
            )
            .filter(InterfaceMetricSample.router_id == router_id)
            .group_by(InterfaceMetricSample.interface_name)
            .subquery()
        )
        rows = (
            InterfaceMetricSample.query.join(
                newest,
                and_(
                    InterfaceMetricSample.interface_name == newest.c.interface_name,
                    InterfaceMetricSample.ts == newest.c.ts,
                ),
            )
            .filter(InterfaceMetricSample.router_id == router_id)
            .order_by(InterfaceMetricSample.interface_name.asc(), InterfaceMetricSample.id.desc())
            .all()
        )
        unique: Dict[str, InterfaceMetricSample] = {}
        for row in rows:
            unique.setdefault(row.interface_name, row)
        return list(unique.values())

    def recent_interface_samples(self, router_id: int, interface_name: str, count: int) -> List[InterfaceMetricSample]:
        """Newest `count` samples for one interface, newest first."""
        return (
            InterfaceMetricSample.query.filter_by(router_id=router_id, interface_name=interface_name)
            .order_by(InterfaceMetricSample.ts.desc(), InterfaceMetricSample.id.desc())
            .limit(count)
            .all()
        )

    def _window(self, query, model, start, end, limit, after, after_id=None):
        if after is not None and after_id is not None:
            query = query.filter(or_(model.ts > after, and_(model.ts == after, model.id > after_id)))
        elif after is not None:
            query = query.filter(model.ts > after)
        elif start is not None:
            query = query.filter(model.ts >= start)
        if end is not None:
            query = query.filter(model.ts <= end)

        limit = _clamp_limit(limit)
        if start is None and after is None:
            # newest page, returned oldest first
            rows = query.order_by(model.ts.desc(), model.id.desc()).limit(limit).all()
            rows.reverse()
            return rows
        return query.order_by(model.ts.asc(), model.id.asc()).limit(limit).all()

    def query(
        self,
        router_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = DEFAULT_LIMIT,
        after: Optional[datetime] = None,
        after_id: Optional[int] = None,
    ) -> List[RouterMetricSample]:
        """
        Samples for a router ordered oldest to newest.

        Pass the `ts` and `id` of the last returned sample as `after` and
        `after_id` to resume. Rows sharing that timestamp are not skipped.
        """
        base = RouterMetricSample.query.filter(RouterMetricSample.router_id == router_id)
        return self._window(base, RouterMetricSample, start, end, limit, after, after_id)

    def query_interface(
        self,
        router_id: int,
        interface_name: Optional[str],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = DEFAULT_LIMIT,
        after: Optional[datetime] = None,
        after_id: Optional[int] = None,
    ) -> List[InterfaceMetricSample]:
        base = InterfaceMetricSample.query.filter(InterfaceMetricSample.router_id == router_id)
        if interface_name:
            base = base.filter(InterfaceMetricSample.interface_name == interface_name)
        return self._window(base, InterfaceMetricSample, start, end, limit, after, after_id)

    def iter_samples(
        self,
        router_id: int,
        start: datetime,
        end: datetime,
        interface_name: Optional[str] = None,
        page_size: int = 500,
    ) -> Iterator[Any]:
        """Lazily page through a range, oldest first."""
        after, after_id = None, None
        while True:
            if interface_name is None:
                page = self.query(router_id, start=start, end=end, limit=page_size, after=after, after_id=after_id)
            else:
                page = self.query_interface(
                    router_id, interface_name, start=start, end=end, limit=page_size, after=after, after_id=after_id
                )
            if not page:
                return
            for sample in page:
                yield sample
            if len(page) < page_size:
                return
            after, after_id = page[-1].ts, page[-1].id

    def bucketed(
        self,
        router_id: int,
        start: datetime,
        end: datetime,
        limit: Optional[int] = DEFAULT_LIMIT,
        interface_name: Optional[str] = None,
    ) -> Tuple[str, List[Dict[str, Any]]]:
        """Range read with the bucket size picked from the span."""
        bucket = choose_bucket(start, end)
        samples = list(self.iter_samples(router_id, start, end, interface_name=interface_name))
        points = downsample(samples, bucket)
        limit = _clamp_limit(limit)
        if len(points) > limit:
            points = points[-limit:]
        return bucket, points
