"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from pod_booking.domain.states import (
    BookingStatus,
    IncidentSeverity,
    IncidentStatus,
    PaymentStatus,
    PodStatus,
)


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# Clusters


class CreateClusterRequest(BaseModel):
    """Request schema for creating a cluster."""

    location_id: str = Field(..., min_length=1, description="Location reference")
    name: str = Field(..., min_length=1, max_length=255, description="Cluster name")
    description: Optional[str] = Field(default=None, description="Free-text description")


class ClusterResponse(ORMModel):
    id: str
    location_id: str
    name: str
    description: Optional[str] = None
    created_at: datetime


# Pods


class CreatePodsRequest(BaseModel):
    """
    Request schema for creating pods.

    Either ``num_rows`` + ``num_cols`` (grid) or ``code`` + ``name`` (single).
    """

    cluster_id: str = Field(..., description="Target cluster")
    num_rows: Optional[int] = Field(default=None, description="Grid rows")
    num_cols: Optional[int] = Field(default=None, description="Grid columns")
    code: Optional[str] = Field(default=None, max_length=32, description="Single pod code")
    name: Optional[str] = Field(default=None, max_length=255, description="Single pod name")
    description: Optional[str] = None
    soundproof_level: int = Field(default=3, ge=1, le=5)
    ventilation_level: int = Field(default=3, ge=1, le=5)
    power_outlets: int = Field(default=2, ge=0)
    wifi_available: bool = True
    max_session_duration: int = Field(default=480, ge=60, description="Minutes")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"cluster_id": "c0a8012e-0000-4000-8000-000000000001", "num_rows": 2, "num_cols": 2},
                {
                    "cluster_id": "c0a8012e-0000-4000-8000-000000000001",
                    "code": "VIP01",
                    "name": "VIP pod",
                    "soundproof_level": 5,
                },
            ]
        }
    }


class UpdatePodRequest(BaseModel):
    """Attribute changes; omitted fields stay as they are."""

    code: Optional[str] = Field(default=None, min_length=1, max_length=32)
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    cluster_id: Optional[str] = None
    soundproof_level: Optional[int] = Field(default=None, ge=1, le=5)
    ventilation_level: Optional[int] = Field(default=None, ge=1, le=5)
    power_outlets: Optional[int] = Field(default=None, ge=0)
    wifi_available: Optional[bool] = None
    max_session_duration: Optional[int] = Field(default=None, ge=60)


class PodReasonRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Why the pod is taken out of circulation")


class DeletePodsRequest(BaseModel):
    cluster_id: str
    codes: List[str] = Field(..., min_length=1)


class DeletePodsResponse(BaseModel):
    deleted: int


class PodResponse(ORMModel):
    id: str
    cluster_id: str
    code: str
    name: str
    description: Optional[str] = None
    status: PodStatus
    maintenance_reason: Optional[str] = None
    soundproof_level: int
    ventilation_level: int
    power_outlets: int
    wifi_available: bool
    max_session_duration: int
    last_cleaned_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


# Bookings


class CreateBookingRequest(BaseModel):
    """Request schema for booking a pod over [start_time, end_time)."""

    pod_id: str
    start_time: datetime
    end_time: datetime


class BookingResponse(ORMModel):
    id: str
    pod_id: str
    requester_id: str
    start_time: datetime
    end_time: datetime
    actual_end_time: Optional[datetime] = None
    status: BookingStatus
    created_at: datetime
    updated_at: datetime


# Payments


class CreatePaymentRequest(BaseModel):
    """Request schema for creating a VNPay payment."""

    amount: int = Field(..., gt=0, description="Amount in VND")
    order_info: str = Field(..., min_length=1, max_length=255, description="Order description")
    booking_id: Optional[str] = Field(default=None, description="Booking being paid for")
    bank_code: Optional[str] = Field(default=None, description="Preselected bank ('' shows all)")
    locale: Optional[str] = Field(default=None, pattern="^(vn|en)$")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"amount": 250000, "order_info": "Pod A01L 2h", "booking_id": "b1"},
            ]
        }
    }


class PaymentResponse(ORMModel):
    payment_id: str
    order_id: str
    booking_id: str
    amount: int
    method: str
    order_info: str
    status: PaymentStatus
    gateway_data: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime
    authorized_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class CreatePaymentResponse(BaseModel):
    payment: PaymentResponse
    payment_url: str = Field(..., description="Signed gateway redirect URL")


class RefundRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Refund amount in VND")
    reason: Optional[str] = Field(default=None, max_length=255)
    transaction_date: Optional[str] = Field(
        default=None, pattern=r"^\d{8}$", description="Original transaction date (YYYYMMDD)"
    )


class RefundResponse(BaseModel):
    payment: PaymentResponse
    refund_request: Dict[str, Any]
    gateway_response: Optional[Dict[str, Any]] = None


class QueryRequest(BaseModel):
    transaction_date: str = Field(..., pattern=r"^\d{8}$", description="YYYYMMDD")


class QueryResponse(BaseModel):
    payment: PaymentResponse
    query_request: Dict[str, Any]


class ReturnResponse(BaseModel):
    """Result shown after the customer's redirect back from the gateway."""

    outcome: str
    response_code: Optional[str] = None
    message: str
    payment: PaymentResponse


class IpnResponse(BaseModel):
    RspCode: str
    Message: str


# Incidents


class CreateIncidentRequest(BaseModel):
    pod_id: str
    description: str = Field(..., min_length=1)
    severity: IncidentSeverity = IncidentSeverity.LOW


class UpdateIncidentStatusRequest(BaseModel):
    status: IncidentStatus


class IncidentResponse(ORMModel):
    id: str
    pod_id: str
    reporter_id: str
    description: str
    severity: IncidentSeverity
    status: IncidentStatus
    created_at: datetime
    updated_at: datetime


# Monitoring


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorResponse(BaseModel):
    error: str
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)
