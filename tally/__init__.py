"""
Tally — Scheduled Marketing Report Pipeline
============================================
Ingests per-channel marketing and commerce metrics into time-bucketed
live snapshots, rolls daily buckets into monthly ones, freezes weekly
point-in-time versions, and on an hourly tick renders and distributes
scheduled reports to each workspace's recipients.

Package layout::

    tally/
    ├── __main__.py        # python -m tally {rollup,freeze,dispatch}
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Report defaults + labels
    ├── jobs.py            # Batch trigger entry points
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + session + async helper
    │   └── models.py      # All ORM models (8 tables)
    ├── engine/
    │   ├── metrics.py     # SUM / AVERAGE / UNKNOWN metric classifier
    │   ├── periods.py     # Timezone-aware bucket arithmetic
    │   └── schedule.py    # Next-run + reporting window calculation
    └── services/
        ├── snapshot_store.py   # Live snapshot upsert-merge + query
        ├── ingest_service.py   # Channel row → canonical metric mapping
        ├── rollup_service.py   # Daily → weekly/monthly aggregation
        ├── freeze_service.py   # Write-once snapshot versions
        ├── schedule_service.py # Schedule + recipient administration
        ├── report_data.py      # Report payload (KPIs, channel mix …)
        ├── delivery.py         # Email / chat webhook + retry
        ├── report_service.py   # Due-schedule dispatcher
        └── batch.py            # Batch result types
"""

__version__ = "0.1.0"
