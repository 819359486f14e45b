"""Sandbox-side internals and the wire contract shared with the host.

Module Overview
---------------
**errors.py**
    Exception taxonomy used on both sides of the exchange. Every class
    carries a stable ``kind`` label for telemetry.

**protocol.py**
    Pydantic schemas for request and response records (camelCase JSON,
    tagged on ``kind`` / ``status``).

**ipc.py**
    The file exchange channel: atomic writes, request and response areas,
    heartbeat file.

**worker.py**
    The worker loop that runs inside the sandbox, claims requests, runs the
    agent and writes responses.

Modules only depend on external packages, clawbox_constants and each other
in the order listed. worker.py also reads the ``sandbox`` section of
gateway.config; nothing else here imports from gateway/.
"""
