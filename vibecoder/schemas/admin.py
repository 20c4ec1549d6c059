from datetime import datetime

from vibecoder.schemas.common import CamelModel


class GrowthBlock(CamelModel):
    current: int
    previous: int
    delta: int
    pct: float | None  # None when previous=0


class RevenueBlock(CamelModel):
    current: int
    previous: int
    delta: int
    pct: float | None


class MetricsWindowOut(CamelModel):
    label: str
    start_utc: datetime
    end_utc: datetime
    users_total: int  # all-time, not windowed
    new_users: GrowthBlock
    paying_buyers: GrowthBlock
    net_revenue: RevenueBlock
    platform_fees: RevenueBlock


class MetricsSummaryOut(CamelModel):
    all_time_users: int
    all_time_paying_buyers: int
    all_time_net_revenue: int
    all_time_platform_fees: int
    windows: list[MetricsWindowOut]
