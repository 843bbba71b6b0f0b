# Overview: App-level error handlers mapping domain exceptions onto the JSON envelope.

"""
Status mapping:

    ValidationError, InvalidRecurrence, InvalidStatusTransition, PaymentError   400
    AuthenticationError                                                          401
    NotFoundError                                                                404
    ReferentialIntegrityViolation                                                404 / 409
    ConflictError, RouteLocked, StaleDataError                                   409
    LedgerIntegrityError, anything unexpected                                    500

Unexpected errors are logged with a traceback; the client gets a generic
message with no internals.
"""

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError
from werkzeug.exceptions import HTTPException

from .responses import failure
from .services.auth_service import AuthenticationError
from .services.billing_service import PaymentError
from .services.ledger_service import LedgerIntegrityError
from .services.lifecycle_service import InvalidStatusTransition
from .validation import ConflictError, NotFoundError, ReferentialIntegrityViolation, ValidationError


def register_error_handlers(app):
    @app.errorhandler(ValidationError)
    def handle_validation_error(error):
        return failure(str(error), 400, error.errors)

    @app.errorhandler(InvalidStatusTransition)
    def handle_invalid_transition(error):
        return failure(str(error), 400)

    @app.errorhandler(PaymentError)
    def handle_payment_error(error):
        return failure(str(error), 400)

    @app.errorhandler(AuthenticationError)
    def handle_authentication_error(error):
        return failure(str(error) or "Authentication required", 401)

    @app.errorhandler(NotFoundError)
    def handle_not_found(error):
        return failure(str(error), 404)

    @app.errorhandler(ReferentialIntegrityViolation)
    def handle_referential_integrity(error):
        return failure(str(error), error.status_code)

    @app.errorhandler(ConflictError)
    def handle_conflict(error):
        return failure(str(error), 409)

    @app.errorhandler(StaleDataError)
    def handle_stale_data(error):
        current_app.logger.warning("Concurrent update lost after retries: %s", error)
        return failure("The record was changed by someone else; reload and try again", 409)

    @app.errorhandler(LedgerIntegrityError)
    def handle_ledger_integrity(error):
        current_app.logger.critical("Ledger integrity failure: %s", error)
        return failure("Internal server error", 500)

    @app.errorhandler(HTTPException)
    def handle_http_exception(error):
        return failure(error.description or error.name, error.code)

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        current_app.logger.exception("Unhandled exception")
        return failure("Internal server error", 500)
