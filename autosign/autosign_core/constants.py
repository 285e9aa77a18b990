"""
Constants, timings, endpoints, and the built-in radar point table.
"""

AUTOSIGN_VERSION = "1.3.0"

# ─── Remote service ──────────────────────────────────────────────
DEFAULT_SERVER_URL = "https://courses.zju.edu.cn"
ROLLCALLS_PATH = "/api/radar/rollcalls"
RADAR_ANSWER_PATH = "/api/rollcall/{rollcall_id}/answer?api_version=1.1.2"
NUMBER_ANSWER_PATH = "/api/rollcall/{rollcall_id}/answer_number_rollcall"

# A 3xx pointing at any of these is a bounce to the identity provider.
LOGIN_REDIRECT_MARKERS = ("identity.zju.edu.cn", "login")

ANSWERED_STATUSES = frozenset({"on_call_fine", "on_call"})
ACCEPTED_STATUS = "on_call_fine"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# ─── Auth modes ──────────────────────────────────────────────────
AUTH_MODE_PASSWORD = "password"
AUTH_MODE_SESSION_TOKEN = "session_token"
AUTH_MODES = (AUTH_MODE_PASSWORD, AUTH_MODE_SESSION_TOKEN)

# ─── Timings ─────────────────────────────────────────────────────
DEFAULT_COOLDOWN_MS = 4000        # Pause between rollcall polls
API_TIMEOUT_SEC = 15              # List / radar answer requests
NUMBER_BATCH_SIZE = 200           # Concurrent code guesses per batch
NUMBER_ATTEMPT_TIMEOUT_MS = 5000  # Slow guesses are abandoned after this
SCHEDULER_TICK_SEC = 30           # Window evaluation interval
SETTLE_DELAY_MS = 3000            # Gap between stop and start in a transition
HANDLER_JOIN_TIMEOUT_SEC = 20     # How long stop() waits for in-flight handlers

# Crash restarts: linear back-off, longer pause on boot-loops
RESTART_STABLE_RUN_SEC = 120      # A run this long resets the crash count
RESTART_BACKOFF_STEP_SEC = 10
RESTART_BACKOFF_MAX_SEC = 60
RESTART_BOOTLOOP_CRASHES = 10
RESTART_BOOTLOOP_WAIT_SEC = 120

AUTH_NOTIFY_INTERVAL_SEC = 24 * 60 * 60   # At most one expiry warning per day
MAX_AUTH_RECOVERIES = 3           # Password rebuilds without a confirmed success

# ─── Schedule defaults ───────────────────────────────────────────
DEFAULT_WINDOW_START = "08:00"
DEFAULT_WINDOW_END = "22:00"

# ─── Radar ───────────────────────────────────────────────────────
EARTH_RADIUS_M = "6372999.26"     # Kept as text so it enters mpmath exactly
SOLVER_PRECISION_DPS = 60
SOLVER_MAX_ITER = 30
SOLVER_TOLERANCE_DEG = "1e-14"
SOLVER_STEP_DEG = "1e-12"
MIN_RADAR_SAMPLES = 3

DEFAULT_PREFERRED_POINT = "ZJGD1"

# name → (longitude, latitude)
DEFAULT_RADAR_POINTS = {
    "ZJGD1": (120.089136, 30.302331),   # Zijingang East 1
    "ZJGX1": (120.085042, 30.30173),    # Zijingang West
    "ZJGB1": (120.077135, 30.305142),   # Zijingang Duan Yongping building
    "YQ4":   (120.122176, 30.261555),   # Yuquan teaching 4
    "YQ1":   (120.123853, 30.262544),   # Yuquan teaching 1
    "YQ7":   (120.120344, 30.263907),   # Yuquan teaching 7
    "ZJ1":   (120.126008, 30.192908),   # Zhijiang 1
    "HJC1":  (120.195939, 30.272068),   # Huajiachi 1
    "HJC2":  (120.198193, 30.270419),   # Huajiachi 2
    "ZJ2":   (120.124267, 30.19139),    # Zhijiang 2
    "YQSS":  (120.124001, 30.265735),   # Yuquan dormitory
    "ZJG4":  (120.073427, 30.299757),   # Zijingang far west
}
