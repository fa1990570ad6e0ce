#!/usr/bin/env python
"""Local development script for running runmeter without Redis or MongoDB."""
import os
import uvicorn

# Set environment variables for local development
os.environ.update({
    "DEBUG": "true",
    "HOST": "127.0.0.1",
    "PORT": "8002",
    "ALLOW_DEFAULT_TOKEN": "true",
    "STORAGE_BACKEND": "memory",
    "EVENT_LOG_BACKEND": "memory",
    "CSV_FALLBACK_DIR": "usage_ledger",
    "BILLING_INTERVAL_MS": "2000",
})

if __name__ == "__main__":
    os.makedirs("usage_ledger", exist_ok=True)

    print("Starting runmeter in development mode")
    print("API: http://127.0.0.1:8002")
    print("Docs: http://127.0.0.1:8002/docs")
    print("Default token: '1' (enabled)")
    print("Backends: in-memory store and event log, docker CLI sandbox")

    uvicorn.run("main:app", host="127.0.0.1", port=8002, reload=True)
