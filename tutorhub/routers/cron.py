from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from tutorhub.config import settings
from tutorhub.db import get_db
from tutorhub.route_logging import EndpointNameRoute
from tutorhub.services.auto_detection_job import run_auto_detection


router = APIRouter(prefix='/api/cron', tags=['Cron'], route_class=EndpointNameRoute)
logger = logging.getLogger(__name__)


def _require_cron_secret(authorization: str | None = Header(default=None)) -> None:
    expected_secret = str(settings.cron_secret or '').strip()
    if not expected_secret:
        raise HTTPException(status_code=503, detail='Cron secret not configured')
    provided = str(authorization or '').strip()
    if provided.lower().startswith('bearer '):
        provided = provided[7:].strip()
    if provided != expected_secret:
        logger.warning('cron_auth_rejected')
        raise HTTPException(status_code=401, detail='Unauthorized')


@router.api_route('/detect-classes', methods=['GET', 'POST'])
def api_detect_classes(
    _: None = Depends(_require_cron_secret),
    db: Session = Depends(get_db),
):
    summary = run_auto_detection(db)
    return {'ok': True, 'summary': summary}
