import threading
from apscheduler.schedulers.background import BackgroundScheduler
from keyed_lock import KeyedLock

# ── Schedulers ──
stats_scheduler = BackgroundScheduler(daemon=True)

# ── Per-entity locks ──
# Keys are ("file", id) or ("series", id); shared by invalidation and repair
entity_locks = KeyedLock()

# ── Linkage Repair ──
repair_in_progress = False
repair_lock = threading.Lock()
repair_last_run_time = 0  # timestamp of last completed repair
