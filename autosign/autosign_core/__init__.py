"""
autosign_core — Autonomous Rollcall Sign-in Engine
==================================================
Architecture: one poll thread per account, short-lived solver threads.

  constants.py     → Version, endpoints, timings, radar point table
  config.py        → Paths, logging, config load/save, AccountConfig
  models.py        → RollCall, LocationSample, Outcome value types
  state.py         → AuthState, EngineStatus, WindowConfig
  http_client.py   → Pooled sessions + password / session-token clients
  api.py           → Server API calls (list, radar answer, number answer)
  notify.py        → AccountLogger sink + DingTalk notifier
  radar.py         → RadarLocator + least-squares location fit
  number_search.py → NumberCodeSearcher (batched concurrent guesses)
  engine.py        → SignInEngine (poll loop, dispatch, auth recovery)
  scheduler.py     → WindowScheduler (daily window, manual overrides)
  runner.py        → main() + auto-restart wrapper
"""
