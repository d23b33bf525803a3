"""
API routes for the pod booking service.

Routes translate HTTP to service calls and back; domain errors propagate to
the single handler registered in api.main.
"""
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from pod_booking.core.booking_coordinator import BookingCoordinator
from pod_booking.core.incidents import IncidentService
from pod_booking.core.payment_engine import PaymentEngine
from pod_booking.core.pod_registry import PodRegistry
from pod_booking.database.connection import get_db
from pod_booking.database.models import Booking
from pod_booking.domain.states import BookingStatus, IncidentStatus, PodStatus
from pod_booking.monitoring.health import HealthCheck

from .dependencies import (
    Actor,
    client_ip,
    get_actor,
    get_booking_coordinator,
    get_incident_service,
    get_payment_engine,
    get_pod_registry,
    require_staff,
)
from .schemas import (
    BookingResponse,
    ClusterResponse,
    CreateBookingRequest,
    CreateClusterRequest,
    CreateIncidentRequest,
    CreatePaymentRequest,
    CreatePaymentResponse,
    CreatePodsRequest,
    DeletePodsRequest,
    DeletePodsResponse,
    HealthCheckResponse,
    IncidentResponse,
    IpnResponse,
    PaymentResponse,
    PodReasonRequest,
    PodResponse,
    QueryRequest,
    QueryResponse,
    RefundRequest,
    RefundResponse,
    ReturnResponse,
    UpdateIncidentStatusRequest,
    UpdatePodRequest,
)

logger = structlog.get_logger(__name__)

# Create routers
cluster_router = APIRouter(prefix="/clusters", tags=["clusters"])
pod_router = APIRouter(prefix="/pods", tags=["pods"])
booking_router = APIRouter(prefix="/bookings", tags=["bookings"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
vnpay_router = APIRouter(prefix="/vnpay", tags=["vnpay"])
incident_router = APIRouter(prefix="/incidents", tags=["incidents"])
monitoring_router = APIRouter(tags=["monitoring"])

health_check = HealthCheck()


# Clusters


@cluster_router.post(
    "",
    response_model=ClusterResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a cluster",
)
async def create_cluster(
    request: CreateClusterRequest,
    actor: Actor = Depends(require_staff),
    registry: PodRegistry = Depends(get_pod_registry),
    db: AsyncSession = Depends(get_db),
) -> ClusterResponse:
    cluster = await registry.create_cluster(
        db, request.location_id, request.name, request.description
    )
    return ClusterResponse.model_validate(cluster)


@cluster_router.get("", response_model=List[ClusterResponse], summary="List clusters")
async def list_clusters(
    location_id: Optional[str] = None,
    registry: PodRegistry = Depends(get_pod_registry),
    db: AsyncSession = Depends(get_db),
) -> List[ClusterResponse]:
    clusters = await registry.list_clusters(db, location_id)
    return [ClusterResponse.model_validate(c) for c in clusters]


@cluster_router.get("/{cluster_id}", response_model=ClusterResponse, summary="Get a cluster")
async def get_cluster(
    cluster_id: str,
    registry: PodRegistry = Depends(get_pod_registry),
    db: AsyncSession = Depends(get_db),
) -> ClusterResponse:
    return ClusterResponse.model_validate(await registry.get_cluster(db, cluster_id))


# Pods


@pod_router.post(
    "",
    response_model=List[PodResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Create pods",
    description="Create a grid of pods (two levels per cell) or a single pod",
)
async def create_pods(
    request: CreatePodsRequest,
    actor: Actor = Depends(require_staff),
    registry: PodRegistry = Depends(get_pod_registry),
    db: AsyncSession = Depends(get_db),
) -> List[PodResponse]:
    logger.info(
        "api_create_pods_request",
        cluster_id=request.cluster_id,
        num_rows=request.num_rows,
        num_cols=request.num_cols,
        code=request.code,
    )
    pods = await registry.create_pods(db, **request.model_dump())
    return [PodResponse.model_validate(p) for p in pods]


@pod_router.get("", response_model=List[PodResponse], summary="List pods")
async def list_pods(
    cluster_id: Optional[str] = None,
    status_filter: Optional[PodStatus] = None,
    code: Optional[str] = None,
    registry: PodRegistry = Depends(get_pod_registry),
    db: AsyncSession = Depends(get_db),
) -> List[PodResponse]:
    pods = await registry.list_pods(db, cluster_id=cluster_id, status=status_filter, code=code)
    return [PodResponse.model_validate(p) for p in pods]


@pod_router.post("/delete-batch", response_model=DeletePodsResponse, summary="Delete pods by code")
async def delete_pods(
    request: DeletePodsRequest,
    actor: Actor = Depends(require_staff),
    registry: PodRegistry = Depends(get_pod_registry),
    db: AsyncSession = Depends(get_db),
) -> DeletePodsResponse:
    deleted = await registry.delete_pods(db, request.cluster_id, request.codes)
    return DeletePodsResponse(deleted=deleted)


@pod_router.get("/{pod_id}", response_model=PodResponse, summary="Get a pod")
async def get_pod(
    pod_id: str,
    registry: PodRegistry = Depends(get_pod_registry),
    db: AsyncSession = Depends(get_db),
) -> PodResponse:
    return PodResponse.model_validate(await registry.get_pod(db, pod_id))


@pod_router.patch("/{pod_id}", response_model=PodResponse, summary="Update pod attributes")
async def update_pod(
    pod_id: str,
    request: UpdatePodRequest,
    actor: Actor = Depends(require_staff),
    registry: PodRegistry = Depends(get_pod_registry),
    db: AsyncSession = Depends(get_db),
) -> PodResponse:
    pod = await registry.update_pod(db, pod_id, **request.model_dump(exclude_unset=True))
    return PodResponse.model_validate(pod)


@pod_router.delete("/{pod_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a pod")
async def delete_pod(
    pod_id: str,
    actor: Actor = Depends(require_staff),
    registry: PodRegistry = Depends(get_pod_registry),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await registry.delete_pod(db, pod_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@pod_router.post("/{pod_id}/start-cleaning", response_model=PodResponse)
async def start_cleaning(
    pod_id: str,
    actor: Actor = Depends(require_staff),
    registry: PodRegistry = Depends(get_pod_registry),
    db: AsyncSession = Depends(get_db),
) -> PodResponse:
    return PodResponse.model_validate(await registry.start_cleaning(db, pod_id))


@pod_router.post("/{pod_id}/complete-cleaning", response_model=PodResponse)
async def complete_cleaning(
    pod_id: str,
    actor: Actor = Depends(require_staff),
    registry: PodRegistry = Depends(get_pod_registry),
    db: AsyncSession = Depends(get_db),
) -> PodResponse:
    return PodResponse.model_validate(await registry.complete_cleaning(db, pod_id))


@pod_router.post("/{pod_id}/maintenance", response_model=PodResponse)
async def enter_maintenance(
    pod_id: str,
    request: PodReasonRequest,
    actor: Actor = Depends(require_staff),
    registry: PodRegistry = Depends(get_pod_registry),
    db: AsyncSession = Depends(get_db),
) -> PodResponse:
    return PodResponse.model_validate(
        await registry.enter_maintenance(db, pod_id, request.reason)
    )


@pod_router.post("/{pod_id}/out-of-service", response_model=PodResponse)
async def force_out_of_service(
    pod_id: str,
    request: PodReasonRequest,
    actor: Actor = Depends(require_staff),
    registry: PodRegistry = Depends(get_pod_registry),
    db: AsyncSession = Depends(get_db),
) -> PodResponse:
    return PodResponse.model_validate(
        await registry.force_out_of_service(db, pod_id, request.reason)
    )


@pod_router.post("/{pod_id}/exit-maintenance", response_model=PodResponse)
async def exit_maintenance(
    pod_id: str,
    actor: Actor = Depends(require_staff),
    registry: PodRegistry = Depends(get_pod_registry),
    db: AsyncSession = Depends(get_db),
) -> PodResponse:
    return PodResponse.model_validate(await registry.exit_maintenance(db, pod_id))


# Bookings


def _ensure_can_act(actor: Actor, booking: Booking) -> None:
    if not actor.is_staff and booking.requester_id != actor.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your booking")


@booking_router.post(
    "",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Book a pod",
    description="Reserve an AVAILABLE pod for a half-open time window",
)
async def create_booking(
    request: CreateBookingRequest,
    actor: Actor = Depends(get_actor),
    coordinator: BookingCoordinator = Depends(get_booking_coordinator),
    db: AsyncSession = Depends(get_db),
) -> BookingResponse:
    booking = await coordinator.create_booking(
        db, request.pod_id, actor.user_id, request.start_time, request.end_time
    )
    return BookingResponse.model_validate(booking)


@booking_router.get("", response_model=List[BookingResponse], summary="List bookings")
async def list_bookings(
    pod_id: Optional[str] = None,
    requester_id: Optional[str] = None,
    status_filter: Optional[BookingStatus] = None,
    actor: Actor = Depends(get_actor),
    coordinator: BookingCoordinator = Depends(get_booking_coordinator),
    db: AsyncSession = Depends(get_db),
) -> List[BookingResponse]:
    if not actor.is_staff:
        requester_id = actor.user_id
    bookings = await coordinator.list_bookings(
        db, pod_id=pod_id, requester_id=requester_id, status=status_filter
    )
    return [BookingResponse.model_validate(b) for b in bookings]


@booking_router.get("/{booking_id}", response_model=BookingResponse, summary="Get a booking")
async def get_booking(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    coordinator: BookingCoordinator = Depends(get_booking_coordinator),
    db: AsyncSession = Depends(get_db),
) -> BookingResponse:
    booking = await coordinator.get_booking(db, booking_id)
    _ensure_can_act(actor, booking)
    return BookingResponse.model_validate(booking)


@booking_router.post("/{booking_id}/start", response_model=BookingResponse, summary="Check in")
async def start_session(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    coordinator: BookingCoordinator = Depends(get_booking_coordinator),
    db: AsyncSession = Depends(get_db),
) -> BookingResponse:
    _ensure_can_act(actor, await coordinator.get_booking(db, booking_id))
    return BookingResponse.model_validate(await coordinator.start_session(db, booking_id))


@booking_router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    coordinator: BookingCoordinator = Depends(get_booking_coordinator),
    db: AsyncSession = Depends(get_db),
) -> BookingResponse:
    _ensure_can_act(actor, await coordinator.get_booking(db, booking_id))
    return BookingResponse.model_validate(await coordinator.complete_booking(db, booking_id))


@booking_router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    coordinator: BookingCoordinator = Depends(get_booking_coordinator),
    db: AsyncSession = Depends(get_db),
) -> BookingResponse:
    _ensure_can_act(actor, await coordinator.get_booking(db, booking_id))
    return BookingResponse.model_validate(await coordinator.cancel_booking(db, booking_id))


# Payments


@payment_router.post(
    "",
    response_model=CreatePaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment",
    description="Create an INITIATED payment and return the signed VNPay redirect URL",
)
async def create_payment(
    request: CreatePaymentRequest,
    http_request: Request,
    actor: Actor = Depends(get_actor),
    engine: PaymentEngine = Depends(get_payment_engine),
    db: AsyncSession = Depends(get_db),
) -> CreatePaymentResponse:
    logger.info(
        "api_create_payment_request",
        booking_id=request.booking_id,
        amount=request.amount,
        user_id=actor.user_id,
    )
    intent = await engine.create_payment(
        db,
        amount=request.amount,
        order_info=request.order_info,
        ip_addr=client_ip(http_request),
        booking_id=request.booking_id,
        bank_code=request.bank_code,
        locale=request.locale,
    )
    return CreatePaymentResponse(
        payment=PaymentResponse.model_validate(intent.payment),
        payment_url=intent.payment_url,
    )


@payment_router.get("", response_model=List[PaymentResponse], summary="Payments of a booking")
async def list_payments(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    engine: PaymentEngine = Depends(get_payment_engine),
    db: AsyncSession = Depends(get_db),
) -> List[PaymentResponse]:
    payments = await engine.list_payments_for_booking(db, booking_id)
    return [PaymentResponse.model_validate(p) for p in payments]


@payment_router.get("/{order_id}", response_model=PaymentResponse, summary="Get payment by order id")
async def get_payment(
    order_id: str,
    actor: Actor = Depends(get_actor),
    engine: PaymentEngine = Depends(get_payment_engine),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    return PaymentResponse.model_validate(await engine.get_payment_by_order_id(db, order_id))


@payment_router.post(
    "/{order_id}/refund",
    response_model=RefundResponse,
    summary="Refund a payment",
    description="Build and sign a full or partial refund request for an AUTHORIZED payment",
)
async def refund_payment(
    order_id: str,
    request: RefundRequest,
    http_request: Request,
    actor: Actor = Depends(require_staff),
    engine: PaymentEngine = Depends(get_payment_engine),
    db: AsyncSession = Depends(get_db),
) -> RefundResponse:
    logger.info("api_refund_payment_request", order_id=order_id, amount=request.amount)
    result = await engine.request_refund(
        db,
        order_id=order_id,
        amount=request.amount,
        reason=request.reason,
        ip_addr=client_ip(http_request),
        transaction_date=request.transaction_date,
        created_by=actor.user_id,
    )
    return RefundResponse(
        payment=PaymentResponse.model_validate(result.payment),
        refund_request=result.refund_request,
        gateway_response=result.gateway_response,
    )


@payment_router.post(
    "/{order_id}/refunded",
    response_model=PaymentResponse,
    summary="Record a confirmed refund",
)
async def mark_refunded(
    order_id: str,
    actor: Actor = Depends(require_staff),
    engine: PaymentEngine = Depends(get_payment_engine),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    return PaymentResponse.model_validate(await engine.mark_refunded(db, order_id))


@payment_router.post("/{order_id}/query", response_model=QueryResponse, summary="Query status")
async def query_payment(
    order_id: str,
    request: QueryRequest,
    actor: Actor = Depends(require_staff),
    engine: PaymentEngine = Depends(get_payment_engine),
    db: AsyncSession = Depends(get_db),
) -> QueryResponse:
    result = await engine.query_payment_status(db, order_id, request.transaction_date)
    return QueryResponse(
        payment=PaymentResponse.model_validate(result.payment),
        query_request=result.query_request,
    )


# Gateway callbacks


@vnpay_router.get(
    "/return",
    response_model=ReturnResponse,
    summary="Customer return URL",
    description="Where VNPay redirects the customer; settles the payment if the IPN has not",
)
async def vnpay_return(
    request: Request,
    engine: PaymentEngine = Depends(get_payment_engine),
    db: AsyncSession = Depends(get_db),
) -> ReturnResponse:
    result = await engine.handle_return(db, dict(request.query_params))
    return ReturnResponse(
        outcome=result.outcome.value,
        response_code=result.response_code,
        message=result.message,
        payment=PaymentResponse.model_validate(result.payment),
    )


@vnpay_router.get(
    "/ipn",
    response_model=IpnResponse,
    summary="VNPay IPN",
    description="Server-to-server notification; always HTTP 200 with an RspCode body",
)
async def vnpay_ipn(
    request: Request,
    engine: PaymentEngine = Depends(get_payment_engine),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, str]:
    return await engine.handle_ipn(db, dict(request.query_params))


# Incidents


@incident_router.post(
    "",
    response_model=IncidentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Report an incident",
)
async def report_incident(
    request: CreateIncidentRequest,
    actor: Actor = Depends(get_actor),
    service: IncidentService = Depends(get_incident_service),
    db: AsyncSession = Depends(get_db),
) -> IncidentResponse:
    incident = await service.report_incident(
        db, request.pod_id, actor.user_id, request.description, request.severity
    )
    return IncidentResponse.model_validate(incident)


@incident_router.get("", response_model=List[IncidentResponse], summary="List incidents")
async def list_incidents(
    pod_id: Optional[str] = None,
    status_filter: Optional[IncidentStatus] = None,
    actor: Actor = Depends(require_staff),
    service: IncidentService = Depends(get_incident_service),
    db: AsyncSession = Depends(get_db),
) -> List[IncidentResponse]:
    incidents = await service.list_incidents(db, pod_id=pod_id, status=status_filter)
    return [IncidentResponse.model_validate(i) for i in incidents]


@incident_router.get("/{incident_id}", response_model=IncidentResponse)
async def get_incident(
    incident_id: str,
    actor: Actor = Depends(require_staff),
    service: IncidentService = Depends(get_incident_service),
    db: AsyncSession = Depends(get_db),
) -> IncidentResponse:
    return IncidentResponse.model_validate(await service.get_incident(db, incident_id))


@incident_router.patch("/{incident_id}/status", response_model=IncidentResponse)
async def update_incident_status(
    incident_id: str,
    request: UpdateIncidentStatusRequest,
    actor: Actor = Depends(require_staff),
    service: IncidentService = Depends(get_incident_service),
    db: AsyncSession = Depends(get_db),
) -> IncidentResponse:
    incident = await service.update_status(db, incident_id, request.status)
    return IncidentResponse.model_validate(incident)


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {"status": "unhealthy", "checks": {"error": str(e)}}


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness() -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness() -> Dict[str, Any]:
    """Readiness probe endpoint; 503 until every dependency answers."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get("/metrics", summary="Prometheus metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
