# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g, current_app

from .errors import StockError, error_response

ACTOR_HEADER = "X-Actor-Id"
ACTOR_MAX_LENGTH = 64


def require_actor(f):
    """
    Require a caller identity for mutating routes.

    Authentication is owned by the upstream gateway; it forwards the
    authenticated operator as the X-Actor-Id header. Sets g.actor.

    Returns 401 if the header is missing or blank.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor = (request.headers.get(ACTOR_HEADER) or "").strip()
        if not actor:
            return jsonify({"error": "Actor identity required", "code": "UNAUTHENTICATED"}), 401
        if len(actor) > ACTOR_MAX_LENGTH:
            return jsonify({"error": "Actor identity too long", "code": "VALIDATION"}), 400

        g.actor = actor
        return f(*args, **kwargs)

    return decorated_function


def handle_stock_errors(f):
    """Render StockError as {"error", "code", "details"}; log anything else and return 500."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except StockError as e:
            body, status = error_response(e)
            return jsonify(body), status
        except Exception:
            current_app.logger.exception("Unhandled error in %s", request.path)
            return jsonify({"error": "Internal server error"}), 500

    return decorated_function
