"""
flow_dispatch -- Asynchronous orchestration of workflow instances.

Commands never advance an instance themselves.  They append the incoming
event to the log and enqueue an orchestration job in the same transaction;
a worker later claims the job, reloads the instance and runs the
interpreter against the persisted snapshot.

Architecture:
    flow_dispatch/ sits between the kernel and flow_services.  It imports
    flow_kernel and flow_engines; task materialization is injected through
    the ``TaskMaterializer`` protocol so nothing here imports flow_services.

Invariants:
    - At-least-once delivery, bounded by ``max_attempts`` per job.
    - Exponential backoff: ``base * 2 ** (attempt - 1)`` seconds.
    - An exhausted job is FAILED and leaves a DISPATCH_FAILED event on the
      instance; failures are never swallowed.
"""
