from pydantic import BaseModel


class TimingMetricStats(BaseModel):
    count: int
    avg_s: float
    max_s: float


class MetricsResponse(BaseModel):
    counters: dict[str, int]
    timings: dict[str, TimingMetricStats]
    # Only reported by the in-process limiter; Redis expires its own buckets.
    rate_limit_buckets: int | None = None
