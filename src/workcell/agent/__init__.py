"""In-worker exec agent.

A small HTTP service that runs inside (or beside) a worker and executes
commands on behalf of the dispatcher, after checking that the request is
addressed to the owner the agent was started for.
"""
