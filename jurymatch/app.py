from __future__ import annotations

import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import ValidationError
from sqlalchemy.orm import Session

from jurymatch import services
from jurymatch.committer import CommitConflictError, CommitFailedError
from jurymatch.config import get_settings
from jurymatch.db import get_session, init_db
from jurymatch.repositories import SqlConfigStore
from jurymatch.review import InvalidTransitionError, ReviewError, ReviewSession
from jurymatch.schemas import (
    AcceptOut,
    AcceptRequest,
    CancelOut,
    CommitOut,
    ConfigUpdate,
    ProposalRequest,
    ReplaceRequest,
    ReplaceStartupRequest,
    ReviewCreated,
    ToggleOut,
    ToggleRequest,
    WhyNotOut,
)
from jurymatch.scorer import AIScoringProvider
from jurymatch.types import RoundConfig

log = logging.getLogger(__name__)

reviews = services.ReviewRegistry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield
    reviews.clear()


app = FastAPI(
    title="Jurymatch",
    version="0.1.0",
    description=(
        "Juror-to-startup matchmaking for review rounds. "
        "Generate explainable proposals, review them, and commit assignments. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Config", "description": "Per-round matching weights."},
        {"name": "Proposals", "description": "Generate proposals and validate round coverage."},
        {"name": "Review", "description": "Edit, approve and commit a review session."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def ai_provider() -> AIScoringProvider | None:
    """Override to inject a scoring provider; None builds the LLM-backed one on demand."""
    return None


def _get_review_or_404(review_id: str) -> ReviewSession:
    review = reviews.get(review_id)
    if review is None:
        raise HTTPException(404, "Review session not found")
    return review


@contextmanager
def _review_errors():
    try:
        yield
    except InvalidTransitionError as exc:
        raise HTTPException(409, str(exc)) from exc
    except ReviewError as exc:
        raise HTTPException(400, str(exc)) from exc


def _validation_detail(exc: ValidationError) -> list[str]:
    return [e["msg"] for e in exc.errors()]


# ---------------------------------------------------------------------------
# Routes: Config
# ---------------------------------------------------------------------------


@app.get("/api/rounds/{round_name}/config", response_model=RoundConfig,
         tags=["Config"], summary="Get matching weights for a round")
async def get_config(round_name: str, session: Session = Depends(db_session)):
    try:
        return SqlConfigStore(session).get_round_config(round_name)
    except ValidationError as exc:
        raise HTTPException(422, _validation_detail(exc)) from exc


@app.put("/api/rounds/{round_name}/config", response_model=RoundConfig,
         tags=["Config"], summary="Validate and store matching weights for a round")
async def put_config(round_name: str, body: ConfigUpdate, session: Session = Depends(db_session)):
    store = SqlConfigStore(session)
    try:
        current = store.get_round_config(round_name).model_dump()
    except ValidationError:
        current = RoundConfig().model_dump()
    current.update(body.model_dump(exclude_unset=True))
    try:
        config = RoundConfig(**current)
    except ValidationError as exc:
        raise HTTPException(422, _validation_detail(exc)) from exc
    return store.save_round_config(round_name, config)


# ---------------------------------------------------------------------------
# Routes: Proposals
# ---------------------------------------------------------------------------


@app.post("/api/rounds/{round_name}/proposals", response_model=ReviewCreated,
          tags=["Proposals"], summary="Generate proposals and open a review session")
async def create_proposals(
    round_name: str,
    body: ProposalRequest | None = None,
    session: Session = Depends(db_session),
    provider: AIScoringProvider | None = Depends(ai_provider),
):
    try:
        config = SqlConfigStore(session).get_round_config(round_name)
    except ValidationError as exc:
        raise HTTPException(422, _validation_detail(exc)) from exc
    if body is not None and body.use_ai_enhancement is not None:
        config = config.model_copy(update={"use_ai_enhancement": body.use_ai_enhancement})

    review = await services.generate_proposals(session, round_name, config=config, ai_provider=provider)
    review_id = reviews.add(review)
    log.info("Opened review %s for round %s with %d proposal(s)",
             review_id, round_name, len(review.proposals))
    return {"review_id": review_id, "review": review.to_dict()}


@app.get("/api/rounds/{round_name}/validation",
         tags=["Proposals"], summary="Coverage, workload and data-consistency report")
async def validate_round(round_name: str, session: Session = Depends(db_session)):
    try:
        return services.round_report(session, round_name)
    except ValidationError as exc:
        raise HTTPException(422, _validation_detail(exc)) from exc


# ---------------------------------------------------------------------------
# Routes: Review
# ---------------------------------------------------------------------------


@app.get("/api/reviews/{review_id}", tags=["Review"], summary="Get review session state")
async def get_review(review_id: str):
    return _get_review_or_404(review_id).to_dict()


@app.post("/api/reviews/{review_id}/toggle", response_model=ToggleOut,
          tags=["Review"], summary="Select or deselect a juror for a startup")
async def toggle(review_id: str, body: ToggleRequest):
    review = _get_review_or_404(review_id)
    with _review_errors():
        selected = review.toggle_candidate(body.startup_id, body.juror_id)
        return {"selected": selected, "selection": review.selected(body.startup_id)}


@app.post("/api/reviews/{review_id}/replace",
          tags=["Review"], summary="Swap a selected juror for another")
async def replace(review_id: str, body: ReplaceRequest):
    review = _get_review_or_404(review_id)
    with _review_errors():
        review.replace_candidate(body.startup_id, body.old_juror_id, body.new_juror_id)
        return {"selection": review.selected(body.startup_id), "workload_deltas": review.workload_deltas()}


@app.post("/api/reviews/{review_id}/replace-startup",
          tags=["Review"], summary="Move a juror to another startup")
async def replace_startup(review_id: str, body: ReplaceStartupRequest):
    review = _get_review_or_404(review_id)
    with _review_errors():
        review.replace_startup(body.juror_id, body.old_startup_id, body.new_startup_id)
        return {
            body.old_startup_id: review.selected(body.old_startup_id),
            body.new_startup_id: review.selected(body.new_startup_id),
        }


@app.get("/api/reviews/{review_id}/search/jurors",
         tags=["Review"], summary="Search replacement jurors for a startup")
async def search_jurors(
    review_id: str,
    startup_id: str,
    q: str = "",
    limit: int = Query(10, ge=1, le=100),
):
    review = _get_review_or_404(review_id)
    with _review_errors():
        return [h.to_dict() for h in review.search_jurors(startup_id, q, limit)]


@app.get("/api/reviews/{review_id}/search/startups",
         tags=["Review"], summary="Search startups a juror could move to")
async def search_startups(
    review_id: str,
    juror_id: str,
    q: str = "",
    limit: int = Query(10, ge=1, le=100),
):
    review = _get_review_or_404(review_id)
    with _review_errors():
        return [h.to_dict() for h in review.search_startups(juror_id, q, limit)]


@app.post("/api/reviews/{review_id}/accept", response_model=AcceptOut,
          tags=["Review"], summary="Approve one row, or every non-empty row")
async def accept(review_id: str, body: AcceptRequest | None = None):
    review = _get_review_or_404(review_id)
    with _review_errors():
        if body is not None and body.startup_id:
            accepted = len(review.accept_row(body.startup_id))
        else:
            accepted = review.accept_all()
    return {"state": review.state.value, "accepted": accepted}


@app.post("/api/reviews/{review_id}/cancel", response_model=CancelOut,
          tags=["Review"], summary="Cancel the session and release reservations")
async def cancel(review_id: str):
    review = _get_review_or_404(review_id)
    with _review_errors():
        released = review.cancel()
    reviews.discard(review_id)
    return {"state": review.state.value, "released": released}


@app.post("/api/reviews/{review_id}/commit", response_model=CommitOut,
          tags=["Review"], summary="Persist the approved assignments")
async def commit(review_id: str, session: Session = Depends(db_session)):
    review = _get_review_or_404(review_id)
    try:
        with _review_errors():
            result = services.commit_review(session, review)
    except CommitConflictError as exc:
        raise HTTPException(409, str(exc)) from exc
    except CommitFailedError as exc:
        raise HTTPException(500, str(exc)) from exc
    reviews.discard(review_id)
    return result.to_dict()


@app.get("/api/reviews/{review_id}/why-not", response_model=WhyNotOut,
         tags=["Review"], summary="Explain why a juror was or wasn't proposed")
async def why_not(review_id: str, startup_id: str, juror_id: str):
    review = _get_review_or_404(review_id)
    with _review_errors():
        explanation = review.why_not(startup_id, juror_id)
    return {"startup_id": startup_id, "juror_id": juror_id, "explanation": explanation}


@app.get("/api/reviews/{review_id}/jurors/{juror_id}/suggestions",
         tags=["Review"], summary="Best startups for one juror, with load and why-not")
async def juror_suggestions(review_id: str, juror_id: str, limit: int | None = Query(None, ge=0)):
    review = _get_review_or_404(review_id)
    with _review_errors():
        suggestions = review.juror_suggestions(juror_id, limit)
    return suggestions.to_dict()


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("jurymatch.app:app", host="127.0.0.1", port=8001)


if __name__ == "__main__":
    main()
