from prometheus_client import Counter, Gauge, Histogram

# Metrics Definitions
ITEM_UPDATES = Counter(
    "tracker_item_updates_total",
    "Candidate item updates seen by the reconciler",
    ["source", "outcome"]  # outcome=applied|discarded|unknown
)

POLL_FAILURES = Counter("tracker_poll_failures_total", "Poll ticks that failed to fetch a snapshot")

CHANNEL_CONNECT_FAILURES = Counter(
    "tracker_channel_connect_failures_total",
    "Push channel connect attempts that failed"
)

CHANNEL_RECONNECTS = Counter(
    "tracker_channel_reconnects_total",
    "Push channel reconnects after an established connection dropped"
)

TIMEOUTS = Counter("tracker_timeouts_total", "Safety deadlines that fired", ["scope"])  # scope=job|retry

JOBS_OBSERVED = Gauge(
    "tracker_jobs_observed",
    "Jobs currently being polled/pushed"
)

JOB_DURATION = Histogram(
    'tracker_job_duration_seconds',
    'Time from execute to completion',
    buckets=[5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0]
)
