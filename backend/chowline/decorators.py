# Overview: Request guard decorators for API routes.

from functools import wraps
from flask import current_app, request, jsonify, g

from .errors import ChowlineError, RateLimited
from .services import access_service, scheduler_service, throttle_service


def error_response(exc: ChowlineError):
    response = jsonify(exc.to_dict())
    response.status_code = exc.status_code
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after_seconds)
    return response


def client_ip() -> str:
    """Leftmost X-Forwarded-For entry, else the socket address."""
    return throttle_service.client_key(
        request.headers.get("X-Forwarded-For"),
        request.remote_addr,
    )


def require_auth(f):
    """
    Require a valid session.

    Sets:
    - g.current_user: The authenticated User object
    - g.session_context: The full SessionContext object

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid, expired or revoked token
    - User account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            context = access_service.require_authenticated(request.headers.get("Authorization"))
        except ChowlineError as e:
            return error_response(e)

        g.current_user = context.user
        g.session_context = context

        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """
    Require one of `roles`, re-read from the identity store.

    SECURITY: The 403 body never lists the accepted roles.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            # Ensure @require_auth was called first
            if not hasattr(g, "current_user"):
                return jsonify({"error": "Authentication required", "code": "UNAUTHENTICATED"}), 401

            try:
                access_service.require_role(g.current_user, *roles)
            except ChowlineError as e:
                return error_response(e)

            return f(*args, **kwargs)

        return decorated_function
    return decorator


def require_scheduler(f):
    """
    Require the scheduler secret as a bearer token.

    Sets g.scheduler_capability for the route to hand to the job.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = access_service.bearer_token(request.headers.get("Authorization"))
        try:
            g.scheduler_capability = scheduler_service.grant_scheduler_capability(token)
        except ChowlineError:
            return jsonify({"error": "Unauthorized"}), 401
        return f(*args, **kwargs)

    return decorated_function


def rate_limited(bucket: str):
    """Sliding-window throttle on the caller's network address."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if current_app.config.get("RATE_LIMIT_ENABLED", True):
                try:
                    throttle_service.check_and_record(bucket, client_ip())
                except ChowlineError as e:
                    return error_response(e)
            return f(*args, **kwargs)

        return decorated_function
    return decorator
