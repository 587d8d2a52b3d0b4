import json
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter

from payguard.database import get_connection
from payguard.models.patterns import PatternRequest, PatternResponse
from payguard.services.fraud_patterns import row_to_pattern

router = APIRouter(tags=["patterns"])


@router.get("/patterns")
async def list_patterns():
    """List the known-fraud patterns the anomaly detector matches against."""
    conn = get_connection()
    rows = conn.execute("SELECT * FROM fraud_patterns ORDER BY priority ASC").fetchall()
    return {"patterns": [row_to_pattern(row) for row in rows]}


@router.post("/patterns", status_code=201)
async def create_pattern(request: PatternRequest) -> PatternResponse:
    """Add a pattern. It applies to the next assessment."""
    conn = get_connection()
    pattern_id = f"pattern_{uuid.uuid4().hex[:8]}"
    now = datetime.now(timezone.utc).isoformat()

    conn.execute(
        """INSERT INTO fraud_patterns (id, name, description, conditions,
           is_active, priority, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (
            pattern_id,
            request.name,
            request.description,
            json.dumps([c.model_dump() for c in request.conditions]),
            1,
            request.priority,
            now,
        ),
    )
    conn.commit()

    return PatternResponse(
        id=pattern_id,
        name=request.name,
        description=request.description,
        conditions=request.conditions,
        is_active=True,
        priority=request.priority,
        created_at=now,
    )
