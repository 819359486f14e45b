"""Host side: admission control, the execution coordinator and its callers.

- locks.py:          GroupLock and AgentSemaphore
- execution.py:      ExecutionCoordinator.execute_agent_run()
- session_store.py:  group key -> continuity session id
- telemetry.py:      trace records and Prometheus metrics
- error_messages.py: classification and user-facing messages
- webhook.py:        HTTP caller
- config.py / run.py: configuration and the process entry point
"""
