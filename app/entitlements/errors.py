from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    SIGNATURE_INVALID = "signature_invalid"
    MALFORMED_PAYLOAD = "malformed_payload"
    MISSING_CORRELATION = "missing_correlation"
    NOT_FOUND = "not_found"
    ALREADY_PROCESSED = "already_processed"
    UPSTREAM_TRANSIENT = "upstream_transient"
    SIDE_EFFECT_FAILURE = "side_effect_failure"


class EntitlementError(Exception):
    kind: ErrorKind = ErrorKind.MALFORMED_PAYLOAD


class SignatureInvalidError(EntitlementError):
    kind = ErrorKind.SIGNATURE_INVALID


class MalformedPayloadError(EntitlementError):
    kind = ErrorKind.MALFORMED_PAYLOAD


class MissingCorrelationError(EntitlementError):
    kind = ErrorKind.MISSING_CORRELATION


class NotFoundError(EntitlementError):
    kind = ErrorKind.NOT_FOUND


class OfferingNotFoundError(NotFoundError):
    pass


class AlreadyProcessedError(EntitlementError):
    kind = ErrorKind.ALREADY_PROCESSED


class UpstreamTransientError(EntitlementError):
    kind = ErrorKind.UPSTREAM_TRANSIENT


class BillingRequestError(NotFoundError):
    pass


class SideEffectFailureError(EntitlementError):
    kind = ErrorKind.SIDE_EFFECT_FAILURE


class AccessGrantNotFoundError(Exception):
    pass


class InvalidGrantRequestError(Exception):
    pass
