from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from config import configure_logging, get_config
from errors import MissingLedgerAccount
from models import FinalizedMatch, SlipOutcome
from settlement_engine_db import settle_batch_db
from db.db import get_conn
from db.repositories import get_balance, get_bet_slip, get_commission_transactions


@asynccontextmanager
async def lifespan(_app: FastAPI):
    configure_logging()
    yield


app = FastAPI(title="Sportsbook Settlement", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------
# pydantic models (requests)
# ---------

class FinalizedMatchRequest(BaseModel):
    match_id: str = Field(..., min_length=1, description="Fixture identifier referenced by bet legs")
    period: Literal["full-time", "half-time"]
    home_score: int = Field(..., ge=0)
    away_score: int = Field(..., ge=0)
    cancelled: bool = Field(False, description="Fixture abandoned; legs on it are voided")


class MatchBatchRequest(BaseModel):
    matches: List[FinalizedMatchRequest] = Field(..., description="Newly finalized results")


# ---------
# helpers
# ---------

def _outcome_json(outcome: SlipOutcome) -> Dict[str, Any]:
    return {
        "slip_id": outcome.slip_id,
        "outcome": outcome.outcome,
        "status": outcome.status,
        "payout": outcome.payout,
        "profit": outcome.profit,
        "commissions": [
            {
                "account_id": c.account_id,
                "rate": str(c.rate),
                "amount": c.amount,
                "bet_category": c.bet_category,
            }
            for c in outcome.commissions
        ],
        "commission_skipped": outcome.commission_skipped,
        "error": outcome.error,
    }


# ---------
# endpoints
# ---------

@app.post("/api/webhook/matches")
def webhook_matches(payload: MatchBatchRequest):
    """
    settlement trigger for the external scheduler / data feed.
    records the finalized results and settles every affected pending slip.
    per-slip failures are reported in the body, not as an HTTP error.
    """
    matches = [
        FinalizedMatch(
            match_id=m.match_id,
            period=m.period,
            home_score=m.home_score,
            away_score=m.away_score,
            cancelled=m.cancelled,
        )
        for m in payload.matches
    ]

    config = get_config()
    try:
        report = settle_batch_db(matches, config.rules(), config.settlement_workers)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        raise HTTPException(status_code=500, detail="Internal server error")

    return {
        "settled": report.settled,
        "awaiting": report.awaiting,
        "duplicate": report.duplicate,
        "failed": report.failed,
        "slips": [_outcome_json(o) for o in report.outcomes],
    }


@app.get("/api/ledger/balance")
def ledger_balance(account_id: int = Query(..., description="Account whose balance to read")):
    try:
        with get_conn() as conn:
            record = get_balance(conn, account_id)
    except MissingLedgerAccount as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception:
        raise HTTPException(status_code=500, detail="Internal server error")

    return {
        "account_id": account_id,
        "cash_balance": record.cash_balance,
        "account_balance": record.account_balance,
    }


@app.get("/api/slips/{slip_id}")
def slip_detail(slip_id: int):
    """
    settlement view of one slip: status, money, per-leg outcomes and the
    commission entries it produced.
    """
    try:
        with get_conn() as conn:
            slip = get_bet_slip(conn, slip_id)
            commissions = get_commission_transactions(conn, slip_id) if slip else []
    except Exception:
        raise HTTPException(status_code=500, detail="Internal server error")

    if slip is None:
        raise HTTPException(status_code=404, detail=f"Bet slip {slip_id} not found")

    return {
        "slip_id": slip.id,
        "account_id": slip.account_id,
        "bet_type": slip.bet_type,
        "stake": slip.stake,
        "status": slip.status,
        "conditions": slip.conditions,
        "payout": slip.payout,
        "profit": slip.profit,
        "settled_at": slip.settled_at.isoformat() if slip.settled_at else None,
        "legs": [
            {
                "match_id": leg.match_id,
                "bet_category": leg.bet_category,
                "market": leg.market,
                "period": leg.period,
                "line": leg.line,
                "price": str(leg.price),
                "outcome": leg.outcome,
                "payout_multiplier": (
                    str(leg.payout_multiplier) if leg.payout_multiplier is not None else None
                ),
            }
            for leg in slip.legs
        ],
        "commissions": [
            {
                "account_id": c["account_id"],
                "commission_rate": str(c["commission_rate"]),
                "amount": c["amount"],
                "bet_category": c["bet_category"],
            }
            for c in commissions
        ],
    }
