"""RMS reconciliation backend package.

Turns the day's risk-ledger, exchange allocation and margin exports into
per-client allocation adjustments and the exchange/RMS upload files. Run the
HTTP surface standalone via Uvicorn:

    python -m uvicorn rms_recon.api_app:app --host 127.0.0.1 --port 8000
"""
