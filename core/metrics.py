from prometheus_client import Counter, Histogram

AUTOTRADE_DECISIONS = Counter(
    "autotrade_decisions_total",
    "Auto-trade evaluations by outcome",
    ["outcome"],
)
AUTOTRADE_ORDERS = Counter(
    "autotrade_orders_total",
    "Orders sent to the execution port",
    ["side", "result"],
)
LEDGER_FAILURES = Counter(
    "autotrade_ledger_failures_total",
    "Ledger writes that failed after an order was confirmed",
)
SCHEDULING_RUNS = Counter(
    "scheduling_user_runs_total",
    "Per-user scheduling pipeline runs by outcome",
    ["outcome"],
)
BATCH_SYMBOL_FAILURES = Counter(
    "scheduling_symbol_failures_total",
    "Per-symbol market data failures inside a batch",
)
STAGE_SECONDS = Histogram(
    "scheduling_stage_seconds",
    "Duration of scheduling pipeline stages",
    ["stage"],
)
