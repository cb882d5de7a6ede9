"""Local task orchestration for media pipelines.

Tasks live in one SQLite file. A single engine process claims ready tasks,
runs them on a bounded thread pool, retries failures by per-type policy,
and materializes cron schedules into fresh task instances.

Why not Celery / Dramatiq / Prefect?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Everything here runs on one machine against local files. A broker would add
an operational dependency while the interesting parts (dependency skips and
schedule overlap policies) would still be custom code. A claim
loop over SQLite with compare-and-set updates is enough for this scope.
"""
