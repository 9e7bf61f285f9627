"""
FastAPI Application Package

Control surface of the runtime: subsystem toggles, registry reads, order and
script operations, and websocket market-data streams. See app.main.
"""
