"""
Analytics service for adaptive link scans: aggregation, text reports and charts.
"""
from datetime import datetime, timedelta, UTC
from html import escape
from io import BytesIO
from typing import Dict, List, Optional, Literal

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import matplotlib.dates as mdates

from src.modules.adaptive.domain.interfaces import AdaptiveLinkRepository
from src.modules.adaptive.domain.models import AdaptiveLink, LinkStats, ScanEvent, SlotStats


MetricType = Literal['total', 'unique', 'first_visit']
DEFAULT_DAYS = 30


class AnalyticsService:
    def __init__(self, repository: AdaptiveLinkRepository):
        self._repository = repository

    async def get_link_scans(
        self,
        link_id: int,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[ScanEvent]:
        start_date, end_date = _default_period(start_date, end_date)

        return await self._repository.get_scans_for_link(
            link_id=link_id,
            start_date=start_date,
            end_date=end_date
        )

    async def get_aggregated_stats(
        self,
        link_ids: Optional[List[int]] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        daily: bool = True
    ) -> List[LinkStats]:
        start_date, end_date = _default_period(start_date, end_date)

        return await self._repository.get_aggregated_stats(
            link_ids=link_ids,
            start_date=start_date,
            end_date=end_date,
            daily=daily
        )

    async def get_slot_stats(
        self,
        link_id: int,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[SlotStats]:
        start_date, end_date = _default_period(start_date, end_date)
        return await self._repository.get_slot_stats(link_id, start_date=start_date, end_date=end_date)

    async def generate_chart(
        self,
        link_ids: Optional[List[int]] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        metrics: Optional[List[MetricType]] = None,
        title: Optional[str] = None
    ) -> BytesIO:
        """
        Generate PNG chart of daily scan metrics.

        Args:
            link_ids: Filter by specific links (None for all active links)
            start_date: Start date (inclusive, UTC), defaults to 30 days ago
            end_date: End date (inclusive, UTC), defaults to today
            metrics: Metrics to plot, defaults to ['total', 'unique']
            title: Custom chart title

        Returns:
            BytesIO buffer containing PNG image
        """
        if metrics is None:
            metrics = ['total', 'unique']

        start_date, end_date = _default_period(start_date, end_date)

        stats = await self.get_aggregated_stats(
            link_ids=link_ids,
            start_date=start_date,
            end_date=end_date,
            daily=True
        )

        if not title:
            if link_ids and len(link_ids) == 1:
                link = await self._repository.get_link_by_id(link_ids[0], include_deleted=True)
                title = f"Scans: {link.name if link else 'Unknown'}"
            elif link_ids:
                title = f"Scans: {len(link_ids)} links"
            else:
                title = "Scans: All Adaptive Links"

        return self._create_time_series_chart(
            stats=stats,
            metrics=metrics,
            title=title,
            start_date=start_date,
            end_date=end_date
        )

    def _create_time_series_chart(
        self,
        stats: List[LinkStats],
        metrics: List[MetricType],
        title: str,
        start_date: datetime,
        end_date: datetime
    ) -> BytesIO:
        per_day: Dict = {}
        for stat in stats:
            if stat.date is None:
                continue

            bucket = per_day.setdefault(stat.date.date(), {'total': 0, 'unique': 0, 'first_visit': 0})
            bucket['total'] += stat.total_scans
            bucket['unique'] += stat.unique_visitors
            bucket['first_visit'] += stat.first_visits

        dates = []
        series: Dict[str, List[int]] = {'total': [], 'unique': [], 'first_visit': []}

        current_date = start_date.date()
        while current_date <= end_date.date():
            dates.append(current_date)
            bucket = per_day.get(current_date, {})
            for key in series:
                series[key].append(bucket.get(key, 0))
            current_date += timedelta(days=1)

        fig, ax = plt.subplots(figsize=(12, 6))

        metric_configs = {
            'total': ('Total scans', 'blue'),
            'unique': ('Unique visitors', 'green'),
            'first_visit': ('First visits', 'orange'),
        }

        for metric in metrics:
            if metric in metric_configs:
                label, color = metric_configs[metric]
                ax.plot(dates, series[metric], marker='o', label=label, color=color, linewidth=2)

        ax.xaxis.set_major_formatter(mdates.DateFormatter('%d.%m'))
        ax.xaxis.set_major_locator(mdates.DayLocator(interval=max(1, len(dates) // 10)))
        plt.xticks(rotation=45, ha='right')

        ax.set_xlabel('Date')
        ax.set_ylabel('Scans')
        ax.set_title(title, fontsize=14, fontweight='bold')
        ax.legend()
        ax.grid(True, alpha=0.3)

        plt.tight_layout()

        buffer = BytesIO()
        plt.savefig(buffer, format='png', dpi=150, bbox_inches='tight')
        buffer.seek(0)
        plt.close(fig)

        return buffer

    def format_stats_text(
        self,
        stats: List[LinkStats],
        include_daily: bool = False
    ) -> str:
        if not stats:
            return "No scans in the selected period."

        if include_daily:
            lines = ["📊 Daily scans:\n"]

            by_link: Dict[int, Dict] = {}
            for stat in stats:
                entry = by_link.setdefault(stat.link_id, {'name': stat.name, 'slug': stat.slug, 'daily': []})
                entry['daily'].append(stat)

            for data in by_link.values():
                lines.append(f"\n🔗 {escape(data['name'])} ({escape(data['slug'])})")

                for stat in sorted(data['daily'], key=lambda s: s.date or datetime.min.replace(tzinfo=UTC)):
                    date_str = stat.date.strftime('%Y-%m-%d') if stat.date else 'Total'
                    lines.append(
                        f"  {date_str}: "
                        f"{stat.total_scans} scans, "
                        f"{stat.unique_visitors} unique, "
                        f"{stat.first_visits} first visits"
                    )
        else:
            lines = ["📊 Scan summary:\n"]

            for stat in stats:
                lines.append(
                    f"🔗 {escape(stat.name)} ({escape(stat.slug)}):\n"
                    f"  Total scans: {stat.total_scans}\n"
                    f"  Unique visitors: {stat.unique_visitors}\n"
                    f"  First visits: {stat.first_visits}\n"
                )

        return "\n".join(lines)

    def format_slot_breakdown(self, link: AdaptiveLink, slot_stats: List[SlotStats]) -> str:
        if not slot_stats:
            return "No scans per content yet."

        names = {slot.id: slot.name for slot in link.slots}
        total = sum(stat.total_scans for stat in slot_stats)
        lines = ["🎯 Served content:"]
        for stat in slot_stats:
            share = stat.total_scans * 100 / total if total else 0
            name = names.get(stat.slot_id, f"deleted ({stat.slot_id[:8]})")
            lines.append(f"  {escape(name)}: {stat.total_scans} ({share:.0f}%)")
        return "\n".join(lines)


def _default_period(
    start_date: Optional[datetime],
    end_date: Optional[datetime]
) -> tuple[datetime, datetime]:
    if start_date is None:
        start_date = datetime.now(UTC) - timedelta(days=DEFAULT_DAYS)

    if end_date is None:
        end_date = datetime.now(UTC)

    return start_date, end_date
