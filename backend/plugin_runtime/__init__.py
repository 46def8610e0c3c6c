"""
Plugin runtime — loads, sandboxes and dispatches database-stored plugin code.

Structure:
    store.py        — Manifest Store (plugins, artifacts, installs)
    tenant.py       — TenantContext, per-store databases, the `db` data handle
    loader.py       — source normalization and entry-point resolution
    capabilities.py — per-invocation capability records, the `api` client
    ui_primitives.py — closed UI component registry
    engine.py       — AST validation, compile cache, invocation
    sandbox.py      — pool of guest interpreter processes (guest.py)
    hooks.py        — filter chains over fixed hook points
    events.py       — fire-and-forget event delivery
    controllers.py  — plugin API endpoints
    widgets.py      — widget / admin page rendering and navigation
    cron.py, scheduler.py — cron expressions and the job scheduler
    migrations.py   — per-store DDL migrations
    lifecycle.py    — install / enable / disable / config / uninstall
"""
