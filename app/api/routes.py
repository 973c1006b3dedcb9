from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from app.integrations.booking_rest import parse_reservation
from app.schemas.access import AccessDecision, PresentRequest
from app.schemas.reservation import ReservationEvent

router = APIRouter()


def _orchestrator(request: Request):
    return request.app.state.orchestrator


@router.post('/access/present', response_model=AccessDecision)
def present_credential(req: PresentRequest, request: Request):
    credential = req.credential.strip()
    if not credential:
        raise HTTPException(status_code=400, detail='CREDENTIAL_REQUIRED')

    decision = _orchestrator(request).present(credential)
    if not decision.granted:
        raise HTTPException(status_code=403, detail={'reason': decision.reason, 'message': decision.message})
    return decision


@router.get('/admin/credentials')
def list_active_credentials(request: Request):
    rows = _orchestrator(request).list_active_credentials()
    return {'credentials': rows, 'count': len(rows)}


@router.get('/admin/door-codes/stats')
def door_code_stats(request: Request):
    return _orchestrator(request).generator.stats()


@router.get('/metrics/access')
def access_metrics(request: Request):
    return _orchestrator(request).stats()


@router.get('/health')
def health(request: Request):
    orchestrator = _orchestrator(request)
    report = orchestrator.last_health_check or orchestrator.health_check_once()
    return report.model_dump()


@router.get('/status')
def status(request: Request):
    return _orchestrator(request).status()


@router.post('/orchestrator/poll')
def trigger_poll(request: Request):
    return _orchestrator(request).poll_once()


@router.post('/webhooks/booking')
def booking_webhook(payload: dict, request: Request):
    raw = payload.get('reservation')
    if not payload.get('type') or not isinstance(raw, dict):
        raise HTTPException(status_code=400, detail='INVALID_BOOKING_EVENT')

    try:
        event = ReservationEvent(type=str(payload['type']), reservation=parse_reservation(raw))
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=f'INVALID_BOOKING_EVENT: {exc}') from exc

    return _orchestrator(request).ingest_event(event)
