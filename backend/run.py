#!/usr/bin/env python3
# backend/run.py
"""
Development server runner.

Defaults to the fake Stripe and Graph clients so local runs never touch real
providers; export PAYMENT_PROVIDER=stripe / MEETING_PROVIDER=graph to opt in.
"""
import os

import uvicorn

os.environ.setdefault("PAYMENT_PROVIDER", "fake")
os.environ.setdefault("MEETING_PROVIDER", "fake")

if __name__ == "__main__":
    uvicorn.run("tipu.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
