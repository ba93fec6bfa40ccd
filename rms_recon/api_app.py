from __future__ import annotations

import asyncio
import io
import logging
import uuid
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from .dates import trading_day
from .engine import apply_ledger_edit, apply_margin_base, apply_unallocated_fund, process_allocation_domain
from .errors import MissingInputError, ReconError
from .intersegment import EVENING, MORNING, evening_files, morning_files, process_evening, process_morning
from .models import GeneratedFile, InputFile, PayoutSegment
from .outputs import allocation_files
from .payout import apply_pay_edit, payout_files, process_payout, toggle_status
from .segregation import process_segregation, segregation_files
from .settings import DEFAULT_SETTINGS, ReconSettings
from .summary import Memo, allocation_summary, intersegment_summary, payout_summary, segregation_summary

logger = logging.getLogger(__name__)

app = FastAPI(title="RMS Recon API", version="1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_settings: ReconSettings = DEFAULT_SETTINGS

ALLOCATION_DOMAINS = ("mcx", "nse_fo", "nse_cm")
PAYOUT = "payout"
SEGREGATION = "segregation"

# Last successful result per domain. A failed pass never replaces it.
_results: Dict[str, Any] = {}

# In-memory token store for downloads. Only the latest pass of each domain stays downloadable.
_downloads: Dict[str, GeneratedFile] = {}
_domain_tokens: Dict[str, List[str]] = {}

_summaries: Dict[str, Memo] = {
    **{d: Memo(allocation_summary) for d in ALLOCATION_DOMAINS},
    MORNING: Memo(lambda r: intersegment_summary(r.records)),
    EVENING: Memo(lambda r: intersegment_summary(r.records)),
    PAYOUT: Memo(lambda r: payout_summary(r.records, r.duplicates)),
    SEGREGATION: Memo(segregation_summary),
}


# ============================================================================
# Request Models
# ============================================================================

class LedgerEdit(BaseModel):
    client_key: str
    ledger_amount: float


class UnallocatedUpdate(BaseModel):
    unallocated_fund: float
    margin_base_lakhs: Optional[float] = None


class PayEdit(BaseModel):
    ucc: str
    pay: float
    segment: Optional[PayoutSegment] = None


class StatusToggle(BaseModel):
    ucc: str
    segment: Optional[PayoutSegment] = None


# ============================================================================
# Helper Functions
# ============================================================================

def _parse_iso_date(s: Optional[str]) -> date:
    if not s:
        return trading_day(_settings)
    try:
        return datetime.fromisoformat(s).date()
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid date: {s}")


async def _read(upload: Optional[UploadFile]) -> Optional[InputFile]:
    if upload is None:
        return None
    return InputFile(name=upload.filename or "", data=await upload.read())


async def _read_all(*uploads: Optional[UploadFile]) -> List[Optional[InputFile]]:
    """Read every upload of one request concurrently."""
    return list(await asyncio.gather(*(_read(u) for u in uploads)))


def _guard(fn: Callable[..., Any], *args, **kwargs) -> Any:
    """Run one pass, mapping failures onto HTTP status codes."""
    try:
        return fn(*args, **kwargs)
    except MissingInputError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())
    except ReconError as e:
        logger.warning("Pass failed: %s", e)
        raise HTTPException(status_code=422, detail=e.to_dict())
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


def _stored(domain: str) -> Any:
    if domain not in _summaries:
        raise HTTPException(status_code=404, detail=f"Unknown domain: {domain}")
    if domain not in _results:
        raise HTTPException(status_code=404, detail=f"No {domain} result yet")
    return _results[domain]


def _publish(domain: str, files: List[GeneratedFile]) -> List[Dict[str, str]]:
    for stale in _domain_tokens.pop(domain, []):
        _downloads.pop(stale, None)
    out = []
    tokens = []
    for f in files:
        token = uuid.uuid4().hex
        _downloads[token] = f
        tokens.append(token)
        out.append({"file_name": f.file_name, "download_token": token, "url": f"/download/{token}"})
    _domain_tokens[domain] = tokens
    return out


def _respond(domain: str, result: Any, files: List[GeneratedFile], body: Dict[str, Any]) -> Dict[str, Any]:
    _results[domain] = result
    return {
        "domain": domain,
        **body,
        "summary": _summaries[domain](result),
        "files": _publish(domain, files),
    }


def _allocation_response(domain: str, result, day: date) -> Dict[str, Any]:
    files = allocation_files(result, _settings, day)
    return _respond(domain, result, files, {"result": result.to_dict()})


def _payout_response(result, day: date) -> Dict[str, Any]:
    return _respond(PAYOUT, result, payout_files(result, day), {"result": result.to_dict()})


# ============================================================================
# API Endpoints
# ============================================================================

@app.get("/health")
def health():
    """Simple health check endpoint"""
    return {"ok": True, "status": "running"}


@app.post("/reconcile/{domain}")
async def reconcile_endpoint(
    domain: str,
    risk: Optional[UploadFile] = File(None),
    feed: Optional[UploadFile] = File(None),
    margin: Optional[UploadFile] = File(None),
    exclusions: Optional[UploadFile] = File(None),
    unallocated_fund: float = Form(0.0),
    margin_base_lakhs: Optional[float] = Form(None),
    date_str: Optional[str] = None,
):
    """Reconcile one allocation domain (mcx, nse_fo, nse_cm)."""
    if domain not in ALLOCATION_DOMAINS:
        raise HTTPException(status_code=404, detail=f"Unknown domain: {domain}")
    day = _parse_iso_date(date_str)
    risk_in, feed_in, margin_in, excl_in = await _read_all(risk, feed, margin, exclusions)
    result = _guard(
        process_allocation_domain,
        domain, risk_in, feed_in,
        margin=margin_in,
        exclusions=excl_in,
        unallocated_fund=unallocated_fund,
        margin_base_lakhs=margin_base_lakhs,
        settings=_settings,
    )
    return _allocation_response(domain, result, day)


@app.patch("/reconcile/{domain}/ledger")
def edit_ledger(domain: str, edit: LedgerEdit, date_str: Optional[str] = None):
    """Replace one client's ledger amount and refold every total."""
    current = _stored(domain)
    result = _guard(apply_ledger_edit, current, edit.client_key, edit.ledger_amount, _settings)
    return _allocation_response(domain, result, _parse_iso_date(date_str))


@app.patch("/reconcile/{domain}/unallocated")
def update_unallocated(domain: str, update: UnallocatedUpdate, date_str: Optional[str] = None):
    current = _stored(domain)
    result = _guard(apply_unallocated_fund, current, update.unallocated_fund, _settings)
    if update.margin_base_lakhs is not None:
        result = _guard(apply_margin_base, result, update.margin_base_lakhs, _settings)
    return _allocation_response(domain, result, _parse_iso_date(date_str))


@app.post("/intersegment/morning")
async def morning_endpoint(
    kambala: Optional[UploadFile] = File(None),
    codes: Optional[UploadFile] = File(None),
    nse_feed: Optional[UploadFile] = File(None),
    date_str: Optional[str] = None,
):
    day = _parse_iso_date(date_str)
    kambala_in, codes_in, feed_in = await _read_all(kambala, codes, nse_feed)
    result = _guard(process_morning, kambala_in, codes_in, feed_in, day, _settings)
    return _respond(MORNING, result, morning_files(result, day), {"result": result.to_dict()})


@app.post("/intersegment/evening")
async def evening_endpoint(
    kambala: Optional[UploadFile] = File(None),
    codes: Optional[UploadFile] = File(None),
    date_str: Optional[str] = None,
):
    day = _parse_iso_date(date_str)
    kambala_in, codes_in = await _read_all(kambala, codes)
    result = _guard(process_evening, kambala_in, codes_in, _settings)
    return _respond(EVENING, result, evening_files(result, day), {"result": result.to_dict()})


@app.post("/payout")
async def payout_endpoint(files: List[UploadFile] = File(default=[]), date_str: Optional[str] = None):
    day = _parse_iso_date(date_str)
    inputs = await _read_all(*files)
    result = _guard(process_payout, inputs, _settings)
    return _payout_response(result, day)


@app.patch("/payout/pay")
def edit_pay(edit: PayEdit, date_str: Optional[str] = None):
    current = _stored(PAYOUT)
    result = _guard(apply_pay_edit, current, edit.ucc, edit.pay, edit.segment)
    return _payout_response(result, _parse_iso_date(date_str))


@app.patch("/payout/status")
def edit_status(toggle: StatusToggle, date_str: Optional[str] = None):
    current = _stored(PAYOUT)
    result = _guard(toggle_status, current, toggle.ucc, toggle.segment)
    return _payout_response(result, _parse_iso_date(date_str))


@app.post("/segregation")
async def segregation_endpoint(files: List[UploadFile] = File(default=[]), date_str: Optional[str] = None):
    day = _parse_iso_date(date_str)
    inputs = await _read_all(*files)
    records = _guard(process_segregation, inputs)
    return _respond(SEGREGATION, records, segregation_files(records, day),
                    {"records": [r.to_dict() for r in records]})


@app.get("/{domain}/summary")
def summary(domain: str):
    """Dashboard totals of the last successful pass."""
    result = _stored(domain)
    return {"domain": domain, "summary": _summaries[domain](result)}


@app.get("/download/{token}")
def download(token: str):
    """Download a generated file by token"""
    if token not in _downloads:
        raise HTTPException(status_code=404, detail="Unknown token")
    f = _downloads[token]
    return StreamingResponse(
        io.BytesIO(f.content),
        media_type=f.media_type,
        headers={"Content-Disposition": f'attachment; filename="{f.file_name}"'},
    )


if __name__ == "__main__":
    logging.basicConfig(level=_settings.log_level.upper())
    uvicorn.run(app, host="127.0.0.1", port=_settings.port)
