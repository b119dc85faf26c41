from prometheus_client import Counter


queue_syncs_total = Counter(
    "nudge_queue_syncs_total",
    "Total queue sync operations by action",
    ["action"],
)

queue_items_removed_total = Counter(
    "nudge_queue_items_removed_total",
    "Total queue rows deleted by sync, routine removal or the sweep",
)

queue_orphans_total = Counter(
    "nudge_queue_orphans_total",
    "Total orphaned queue rows removed by the reconciliation sweep",
)

dispatcher_runs_total = Counter(
    "nudge_dispatcher_runs_total",
    "Total dispatcher runs",
)

dispatcher_claim_conflicts_total = Counter(
    "nudge_dispatcher_claim_conflicts_total",
    "Total queue items skipped because another run claimed them first",
)

dispatcher_items_total = Counter(
    "nudge_dispatcher_items_total",
    "Total queue items processed by final status",
    ["status"],
)

channel_sends_total = Counter(
    "nudge_channel_sends_total",
    "Total successful channel sends",
    ["channel"],
)

channel_failures_total = Counter(
    "nudge_channel_failures_total",
    "Total failed channel sends",
    ["channel", "retryable"],
)

push_rotations_total = Counter(
    "nudge_push_rotations_total",
    "Total push subscription rotations",
)

routine_reminders_created_total = Counter(
    "nudge_routine_reminders_created_total",
    "Total reminders materialised from routines",
)
