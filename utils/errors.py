import logging

from flask import jsonify
from sqlalchemy.exc import SQLAlchemyError

from models import db

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str = None, **extra):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.extra = extra

    def to_response(self):
        return jsonify(success=False, message=self.message, **self.extra), self.status_code


class ValidationError(AppError):
    status_code = 400
    default_message = "Invalid request"


class AuthzError(AppError):
    status_code = 403
    default_message = "Forbidden"


class LockedError(AuthzError):
    status_code = 423
    default_message = "Account is temporarily locked"


class RateLimitedError(AuthzError):
    status_code = 429
    default_message = "Too many requests. Please try again later."


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class TransientDependencyError(AppError):
    status_code = 500
    default_message = "A required service is unavailable. Please try again."


class InternalError(AppError):
    status_code = 500


def register_error_handlers(app):
    @app.errorhandler(AppError)
    def _app_error(err):
        if err.status_code >= 500:
            logger.error("%s: %s", type(err).__name__, err.message)
        return err.to_response()

    @app.errorhandler(SQLAlchemyError)
    def _db_error(err):
        db.session.rollback()
        logger.exception("Unhandled database error")
        return InternalError().to_response()
