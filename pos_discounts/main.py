from contextlib import asynccontextmanager
from typing import List

from fastapi import Depends, FastAPI, HTTPException

from .config import configure_logging, get_settings
from .logic import apply_code, applicable_rules, choose_best, compute_totals, manual_discount
from .models import (
    BestDiscountResponse,
    CartRequest,
    CodeRequest,
    EvaluationResult,
    RuleEvaluation,
    RulesResponse,
    TotalsRequest,
    TotalsResponse,
)
from .repository import RuleRepository, RuleSourceError

settings = get_settings()
repository = RuleRepository(settings)


def get_repository() -> RuleRepository:
    return repository


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings)
    yield
    await repository.aclose()


# ---------------------------
# FastAPI App & Routes
# ---------------------------

app = FastAPI(title="POS Discount Engine", lifespan=lifespan)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/discounts/active", response_model=RulesResponse)
async def list_active_rules(repo: RuleRepository = Depends(get_repository)):
    rules = await repo.load_active()
    return RulesResponse(rules=rules, warning=repo.warning)


@app.get("/discounts", response_model=RulesResponse)
async def list_all_rules(repo: RuleRepository = Depends(get_repository)):
    rules = await repo.load_all()
    return RulesResponse(rules=rules, warning=repo.warning)


@app.put("/discounts/{rule_id}/toggle", response_model=RulesResponse)
async def toggle_rule(rule_id: str, repo: RuleRepository = Depends(get_repository)):
    rule = repo.find(rule_id)
    if rule is None:
        await repo.load_all()
        rule = repo.find(rule_id)
    if rule is None:
        raise HTTPException(status_code=404, detail="Discount rule not found")

    try:
        await repo.toggle_active(rule)
    except RuleSourceError as exc:
        raise HTTPException(status_code=502, detail=str(exc))

    return RulesResponse(rules=repo.cached(), warning=repo.warning)


@app.post("/discounts/evaluate", response_model=EvaluationResult)
async def evaluate_code(payload: CodeRequest, repo: RuleRepository = Depends(get_repository)):
    rules = await repo.load_active()
    return apply_code(payload.code, rules, payload.lines)


@app.post("/discounts/applicable", response_model=List[RuleEvaluation])
async def list_applicable(payload: CartRequest, repo: RuleRepository = Depends(get_repository)):
    rules = await repo.load_active()
    return applicable_rules(rules, payload.lines)


@app.post("/best-discount", response_model=BestDiscountResponse)
async def best_discount(payload: CartRequest, repo: RuleRepository = Depends(get_repository)):
    rules = await repo.load_active()
    applied = choose_best(rules, payload.lines, max_size=settings.max_combo_size)
    totals = compute_totals(payload.lines, applied, settings.vat_percent, settings.vat_enabled)
    return BestDiscountResponse(applied=applied, totals=totals)


@app.post("/bill/totals", response_model=TotalsResponse)
async def bill_totals(payload: TotalsRequest, repo: RuleRepository = Depends(get_repository)):
    rules = await repo.load_active()

    evaluation = None
    if payload.code and payload.code.strip():
        # a typed code replaces the automatic choice outright
        evaluation = apply_code(payload.code, rules, payload.lines)
        applied = manual_discount(evaluation)
    elif settings.auto_apply:
        applied = choose_best(rules, payload.lines, max_size=settings.max_combo_size)
    else:
        applied = None

    totals = compute_totals(payload.lines, applied, settings.vat_percent, settings.vat_enabled)
    return TotalsResponse(totals=totals, applied=applied, evaluation=evaluation)


if __name__ == "__main__":
    import uvicorn

    configure_logging(settings)
    uvicorn.run(
        "pos_discounts.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
    )
