# Annotations stay eager: FastAPI reads route signatures through the slowapi wrapper.
import logging
import math
import sqlite3
from datetime import datetime, timezone
from io import BytesIO
from typing import Annotated, Any, List, Literal, Optional, Union
import zipfile

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from loan_prepay import storage
from loan_prepay.calculator import (
    ACTION_EMI,
    LoanInput,
    NonAmortizingEmiError,
    OfficialRow,
    Prepayment,
    RescheduleResult,
    ScheduleRow,
    amortize_until_paid,
    monthly_rate,
    reschedule,
)
from loan_prepay.config import (
    API_KEY,
    DEFAULT_ANNUAL_RATE,
    DEFAULT_OWNER_ID,
    DEFAULT_RATE_LIMIT,
    DEFAULT_TOTAL_TENURE,
    EXPORT_RATE_LIMIT,
    LOG_LEVEL,
    MAX_ANNUAL_RATE,
    MAX_EXPORT_BYTES,
    MAX_PRINCIPAL,
    MAX_SCHEDULE_ROWS,
    MAX_TERM_MONTHS,
)


logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0].strip()
        if candidate:
            return candidate
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return get_remote_address(request)


limiter = Limiter(key_func=_client_ip, default_limits=[DEFAULT_RATE_LIMIT])

app = FastAPI(
    title="Loan Prepay",
    description="Prepayment planner: shorten the tenure or shrink the EMI, rounded the way the bank does it.",
    version="0.1.0",
)
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)


def require_api_key(request: Request):
    if not API_KEY:
        return
    provided = request.headers.get("x-api-key")
    if not provided or provided != API_KEY:
        raise HTTPException(status_code=401, detail="invalid or missing api key")


def owner_id(x_owner_id: Optional[str] = Header(None, alias="X-Owner-Id")) -> str:
    return (x_owner_id or "").strip() or DEFAULT_OWNER_ID


def expected_version(if_match: Optional[str] = Header(None, alias="If-Match")) -> Optional[int]:
    # ETag is the quoted record version; "*" or no header means an unconditional write.
    if if_match is None:
        return None
    value = if_match.strip()
    if value.startswith("W/"):
        value = value[2:]
    value = value.strip('"')
    if value == "*":
        return None
    try:
        return int(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="If-Match must carry a record version")


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded"})


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PrepaymentIn(BaseModel):
    month: int = Field(..., le=MAX_TERM_MONTHS, description="EMI number after which the lump sum is paid")
    amount: float = Field(..., description="Lump sum; non-positive amounts are ignored")


class OfficialScheduleRow(BaseModel):
    # Bank statement rows; columns other than outstanding/interest are ignored
    model_config = ConfigDict(extra="ignore")

    outstanding: float = Field(..., validation_alias=AliasChoices("Outstanding", "outstanding"))
    interest: Optional[float] = Field(None, validation_alias=AliasChoices("Interest", "interest"))


class LoanRequest(_WireModel):
    principal: Optional[float] = Field(None, gt=0, le=MAX_PRINCIPAL, description="Original loan amount")
    annual_rate: float = Field(DEFAULT_ANNUAL_RATE, ge=0, le=MAX_ANNUAL_RATE, alias="annualRate", description="Annual rate in percent, e.g. 8.35")
    emi: float = Field(..., gt=0, le=MAX_PRINCIPAL, description="Monthly installment")
    total_tenure: int = Field(DEFAULT_TOTAL_TENURE, gt=0, le=MAX_TERM_MONTHS, alias="totalTenure", description="Total number of EMIs")
    paid_emis: int = Field(0, ge=0, alias="paidEmis", description="EMIs already paid")
    prepayments: List[PrepaymentIn] = Field(default_factory=list)
    official_schedule: Optional[List[OfficialScheduleRow]] = Field(None, alias="officialSchedule", description="Bank schedule, used instead of replaying EMIs from the principal")

    @model_validator(mode="after")
    def _validate_ranges(self) -> "LoanRequest":
        if self.paid_emis > self.total_tenure:
            raise ValueError("paidEmis cannot exceed totalTenure")
        return self

    def inputs(self) -> dict:
        return self.model_dump(by_alias=True, exclude={"official_schedule"})


class ScheduleRowOut(BaseModel):
    month: int
    emi_paid: float
    principal: float
    interest: float
    remaining: float


class EmiEventOut(BaseModel):
    seq: int
    month: int
    action: Literal["EMI"]
    emi_paid: float
    interest: float
    principal: float
    remaining_after_emi: float


class PrepayEventOut(BaseModel):
    seq: int
    month: int
    action: Literal["PREPAY", "PREPAY_AFTER_ALREADY_PAID_EMI"]
    prepay_amount: float
    before: float
    remaining_after_prepay: float


SimEventOut = Annotated[Union[EmiEventOut, PrepayEventOut], Field(discriminator="action")]


class KeepEmiOut(_WireModel):
    months_to_finish: Optional[int] = Field(None, alias="monthsToFinish")
    schedule: List[ScheduleRowOut]
    total_interest: Optional[float] = Field(None, alias="totalInterest")
    unbounded: bool = False
    error: Optional[str] = None


class ReduceEmiOut(_WireModel):
    new_emi: float = Field(..., alias="newEmi")
    remaining_schedule: List[ScheduleRowOut] = Field(..., alias="remainingSchedule")
    total_interest: float = Field(..., alias="totalInterest")
    error: Optional[str] = None


class InterestSavedOut(_WireModel):
    keep_emi: Optional[float] = Field(None, alias="keepEMI")
    reduce_emi: Optional[float] = Field(None, alias="reduceEMI")


class RescheduleResponse(_WireModel):
    status: str = "ok"
    start_outstanding: float = Field(..., alias="startOutstanding")
    outstanding_after_prepayments: float = Field(..., alias="outstandingAfterPrepayments")
    sim_log: List[SimEventOut] = Field(..., alias="simLog")
    keep_emi: KeepEmiOut = Field(..., alias="keepEMI")
    reduce_emi: ReduceEmiOut = Field(..., alias="reduceEMI")
    original_remaining_interest: Optional[float] = Field(None, alias="originalRemainingInterest")
    interest_saved: InterestSavedOut = Field(..., alias="interestSaved")
    persisted: bool = False
    version: Optional[int] = None


class LoanRecordResponse(_WireModel):
    owner_id: str = Field(..., alias="ownerId")
    version: int
    created_at: str = Field(..., alias="createdAt")
    updated_at: str = Field(..., alias="updatedAt")
    principal: Optional[float] = None
    annual_rate: Optional[float] = Field(None, alias="annualRate")
    emi: Optional[float] = None
    total_tenure: Optional[int] = Field(None, alias="totalTenure")
    paid_emis: Optional[int] = Field(None, alias="paidEmis")
    prepayments: List[PrepaymentIn] = Field(default_factory=list)
    outstanding_after_prepayments: Optional[float] = Field(None, alias="outstandingAfterPrepayments")
    sim_log: Optional[List[Any]] = Field(None, alias="simLog")
    keep_emi: Optional[Any] = Field(None, alias="keepEMI")
    reduce_emi: Optional[Any] = Field(None, alias="reduceEMI")
    last_calculated_at: Optional[str] = Field(None, alias="lastCalculatedAt")


class LoanSavedResponse(BaseModel):
    status: str = "saved"
    loan: LoanRecordResponse


def _to_engine(body: LoanRequest):
    loan = LoanInput(
        principal=body.principal,
        annual_rate=body.annual_rate,
        emi=body.emi,
        total_tenure=body.total_tenure,
        paid_emis=body.paid_emis,
    )
    prepayments = [Prepayment(month=p.month, amount=p.amount) for p in body.prepayments]
    official = None
    if body.official_schedule is not None:
        official = [OfficialRow(outstanding=r.outstanding, interest=r.interest) for r in body.official_schedule]
    return loan, prepayments, official


def _run(body: LoanRequest) -> RescheduleResult:
    loan, prepayments, official = _to_engine(body)
    try:
        return reschedule(loan, prepayments, official)
    except ValueError as e:
        logger.info("rejected reschedule request: %s", e)
        raise HTTPException(status_code=400, detail=str(e))


def _rows_out(rows: List[ScheduleRow]) -> List[ScheduleRowOut]:
    return [ScheduleRowOut(month=r.month, emi_paid=r.emi_paid, principal=r.principal, interest=r.interest, remaining=r.remaining) for r in rows]


def _events_out(result: RescheduleResult) -> list:
    events = []
    for e in result.sim_log:
        if e.action == ACTION_EMI:
            events.append(EmiEventOut(
                seq=e.seq,
                month=e.month,
                action=e.action,
                emi_paid=e.emi_paid,
                interest=e.interest,
                principal=e.principal,
                remaining_after_emi=e.remaining_after_emi,
            ).model_dump())
        else:
            events.append(PrepayEventOut(
                seq=e.seq,
                month=e.month,
                action=e.action,
                prepay_amount=e.prepay_amount,
                before=e.before,
                remaining_after_prepay=e.remaining_after_prepay,
            ).model_dump())
    return events


def _to_response(result: RescheduleResult) -> RescheduleResponse:
    keep = result.keep_emi
    # JSON has no Infinity: an endless schedule is null + unbounded
    keep_out = KeepEmiOut(
        months_to_finish=None if keep.unbounded else int(keep.months_to_finish),
        schedule=_rows_out(keep.schedule),
        total_interest=None if math.isinf(keep.total_interest) else keep.total_interest,
        unbounded=keep.unbounded,
        error=keep.error,
    )
    reduce = result.reduce_emi
    reduce_out = ReduceEmiOut(
        new_emi=reduce.new_emi,
        remaining_schedule=_rows_out(reduce.remaining_schedule),
        total_interest=reduce.total_interest,
        error=reduce.error,
    )
    return RescheduleResponse(
        start_outstanding=result.start_outstanding,
        outstanding_after_prepayments=result.outstanding_after_prepayments,
        sim_log=_events_out(result),
        keep_emi=keep_out,
        reduce_emi=reduce_out,
        original_remaining_interest=result.original_remaining_interest,
        interest_saved=InterestSavedOut(
            keep_emi=result.interest_saved_keep_emi,
            reduce_emi=result.interest_saved_reduce_emi,
        ),
    )


def _record_out(record: storage.LoanRecord) -> LoanRecordResponse:
    return LoanRecordResponse(
        owner_id=record.owner_id,
        version=record.version,
        created_at=record.created_at,
        updated_at=record.updated_at,
        **record.payload,
    )


def _save(owner: str, payload: dict, version: Optional[int]) -> storage.LoanRecord:
    try:
        return storage.save_loan(owner, payload, expected_version=version)
    except storage.VersionConflictError as e:
        raise HTTPException(status_code=412, detail=str(e))


@app.get("/health", tags=["health"])
@limiter.exempt
def health() -> dict:
    return {"status": "ok"}


@app.post(
    "/v1/loans/prepayment:calc",
    tags=["loan"],
    responses={400: {"description": "Invalid loan or prepayment parameters"}},
)
@limiter.limit(DEFAULT_RATE_LIMIT)
def calc_prepayment(request: Request, body: LoanRequest, _=Depends(require_api_key)) -> RescheduleResponse:
    """Run both rescheduling scenarios without touching the stored record."""
    return _to_response(_run(body))


@app.post(
    "/v1/loans/prepayment:reschedule",
    tags=["loan"],
    responses={
        400: {"description": "Invalid loan or prepayment parameters"},
        412: {"description": "If-Match does not match the stored record version"},
    },
)
@limiter.limit(DEFAULT_RATE_LIMIT)
def reschedule_prepayment(
    request: Request,
    response: Response,
    body: LoanRequest,
    owner: str = Depends(owner_id),
    version: Optional[int] = Depends(expected_version),
    _=Depends(require_api_key),
) -> RescheduleResponse:
    """Run both scenarios and store inputs plus result on the caller's loan record."""
    out = _to_response(_run(body))
    wire = out.model_dump(by_alias=True, exclude={"status", "persisted", "version"})

    try:
        existing = storage.load_loan(owner)
        payload = dict(existing.payload) if existing else {}
        payload.update(body.inputs())
        payload.update(
            outstandingAfterPrepayments=wire["outstandingAfterPrepayments"],
            simLog=wire["simLog"],
            keepEMI=wire["keepEMI"],
            reduceEMI=wire["reduceEMI"],
            lastCalculatedAt=datetime.now(timezone.utc).isoformat(),
        )
        record = _save(owner, payload, version)
    except sqlite3.Error:
        # The calculation stands on its own; report it unsaved
        logger.exception("could not persist loan record for %s", owner)
        return out

    out.persisted = True
    out.version = record.version
    response.headers["ETag"] = f'"{record.version}"'
    return out


@app.put(
    "/v1/loans/current",
    tags=["loan"],
    responses={412: {"description": "If-Match does not match the stored record version"}},
)
@limiter.limit(DEFAULT_RATE_LIMIT)
def save_loan(
    request: Request,
    response: Response,
    body: LoanRequest,
    owner: str = Depends(owner_id),
    version: Optional[int] = Depends(expected_version),
    _=Depends(require_api_key),
) -> LoanSavedResponse:
    """Save loan inputs; the last calculated result is kept as is."""
    existing = storage.load_loan(owner)
    payload = dict(existing.payload) if existing else {}
    payload.update(body.inputs())
    record = _save(owner, payload, version)
    response.headers["ETag"] = f'"{record.version}"'
    return LoanSavedResponse(loan=_record_out(record))


@app.get(
    "/v1/loans/current",
    tags=["loan"],
    responses={404: {"description": "No loan saved for this owner"}},
)
@limiter.limit(DEFAULT_RATE_LIMIT)
def get_loan(
    request: Request,
    response: Response,
    owner: str = Depends(owner_id),
    _=Depends(require_api_key),
) -> LoanRecordResponse:
    record = storage.load_loan(owner)
    if record is None:
        raise HTTPException(status_code=404, detail="No loan found")
    response.headers["ETag"] = f'"{record.version}"'
    return _record_out(record)


@app.post(
    "/v1/loans/prepayment:export-zip",
    tags=["loan"],
    responses={400: {"description": "Invalid loan or prepayment parameters"}},
)
@limiter.limit(EXPORT_RATE_LIMIT)
def export_zip(request: Request, body: LoanRequest, _=Depends(require_api_key)):
    """Export the schedules as a ZIP of Excel files (original plan, keep EMI, reduce EMI, event log)."""
    result = _run(body)

    try:
        base_schedule = amortize_until_paid(result.start_outstanding, monthly_rate(body.annual_rate), body.emi)
    except NonAmortizingEmiError:
        base_schedule = []
    if base_schedule and base_schedule[-1].remaining > 0:
        # Capped replay, not the whole original plan
        base_schedule = []

    _ensure_row_limit(len(base_schedule), "base_schedule")
    _ensure_row_limit(len(result.keep_emi.schedule), "keep_emi_schedule")
    _ensure_row_limit(len(result.reduce_emi.remaining_schedule), "reduce_emi_schedule")

    zip_buf = BytesIO()
    with zipfile.ZipFile(zip_buf, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        if base_schedule:
            zf.writestr("original_plan_schedule.xlsx", _schedule_to_xlsx(base_schedule))
        zf.writestr("prepayment_keep_emi_schedule.xlsx", _schedule_to_xlsx(result.keep_emi.schedule))
        zf.writestr("prepayment_reduce_emi_schedule.xlsx", _schedule_to_xlsx(result.reduce_emi.remaining_schedule))
        zf.writestr("prepayment_events.xlsx", _events_to_xlsx(result))
    zip_bytes = zip_buf.getvalue()
    _ensure_export_size(len(zip_bytes))

    return StreamingResponse(
        BytesIO(zip_bytes),
        media_type="application/zip",
        headers={
            "Content-Disposition": "attachment; filename=prepayment_schedules.zip",
            "X-Interest-Saved-Keep-Emi": _fmt_header_amount(result.interest_saved_keep_emi),
            "X-Interest-Saved-Reduce-Emi": _fmt_header_amount(result.interest_saved_reduce_emi),
        },
    )


def _fmt_header_amount(value: Optional[float]) -> str:
    return "n/a" if value is None else f"{float(value):.2f}"


_HEADER_FONT = Font(bold=True, name="Arial", size=11, color="FFFFFF")
_BODY_FONT = Font(name="Arial", size=10)
_HEADER_FILL = PatternFill("solid", fgColor="0F172A")
_ALT_FILL = PatternFill("solid", fgColor="F8FAFC")
_BORDER = Border(bottom=Side(style="thin", color="E2E8F0"))
_ALIGN_RIGHT = Alignment(horizontal="right")
_ALIGN_CENTER = Alignment(horizontal="center")


def _style_sheet(ws, widths) -> None:
    for cell in ws[1]:
        cell.font = _HEADER_FONT
        cell.fill = _HEADER_FILL
        cell.alignment = _ALIGN_CENTER
    for row in ws.iter_rows(min_row=2):
        for cell in row:
            cell.font = _BODY_FONT
            cell.alignment = _ALIGN_RIGHT if cell.column > 1 else _ALIGN_CENTER
            if cell.row % 2 == 0:
                cell.fill = _ALT_FILL
            cell.border = _BORDER
    for i, w in enumerate(widths, start=1):
        ws.column_dimensions[get_column_letter(i)].width = w


def _schedule_to_xlsx(schedule) -> bytes:
    """Dump a schedule as an xlsx workbook and return its bytes."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Schedule"
    ws.append(["Month", "EMI", "Principal", "Interest", "Remaining", "Interest share"])

    for row in schedule:
        ratio = (row.interest / row.emi_paid) if row.emi_paid else 0.0
        ws.append([row.month, row.emi_paid, row.principal, row.interest, row.remaining, f"{ratio*100:.2f}%"])

    _style_sheet(ws, [8, 14, 14, 14, 16, 14])
    # Months where interest is under half the EMI in red
    for idx, row in enumerate(schedule, start=2):
        if row.emi_paid and row.interest / row.emi_paid < 0.5:
            ws.cell(row=idx, column=6).font = Font(name="Arial", size=10, color="EF4444")

    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()


def _events_to_xlsx(result: RescheduleResult) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Events"
    ws.append(["Month", "Action", "EMI paid", "Interest", "Principal", "Prepayment", "Before", "Remaining"])

    for e in result.sim_log:
        if e.action == ACTION_EMI:
            ws.append([e.month, e.action, e.emi_paid, e.interest, e.principal, None, None, e.remaining_after_emi])
        else:
            ws.append([e.month, e.action, None, None, None, e.prepay_amount, e.before, e.remaining_after_prepay])

    _style_sheet(ws, [8, 34, 14, 14, 14, 14, 16, 16])
    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()


def _ensure_row_limit(rows: int, label: str) -> None:
    if rows > MAX_SCHEDULE_ROWS:
        raise HTTPException(status_code=413, detail=f"{label} too large, exceeds {MAX_SCHEDULE_ROWS} rows limit")


def _ensure_export_size(size_bytes: int) -> None:
    if size_bytes > MAX_EXPORT_BYTES:
        raise HTTPException(status_code=413, detail="export file too large")
