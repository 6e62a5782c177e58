"""
FastAPI pre-handler guards.

Provides:
- @require_feature: 403 unless the user's tier includes a feature
- @enforce_quota: 402 if the operation's quota is exhausted; tracks usage
  only after the handler returned successfully
- @enforce_rate_limit: 429 when the burst window is full
"""

import functools
import inspect
import logging
from typing import Any, Callable, Optional

from fastapi import HTTPException, status

from .enforcement import get_enforcement_facade
from .exceptions import FeatureNotAvailableError, MissingProviderKeyError
from .feature_gate import get_feature_gate
from .quota_enforcer import get_quota_enforcer
from .schemas import UsageOperation
from .subscription_manager import get_subscription_manager

logger = logging.getLogger(__name__)


def _extract_param(func: Callable, args: tuple, kwargs: dict, name: str) -> Optional[Any]:
    """Find a named argument in kwargs or by position in the signature."""
    if name in kwargs:
        return kwargs[name]

    params = list(inspect.signature(func).parameters.keys())
    if name in params:
        idx = params.index(name)
        if idx < len(args):
            return args[idx]
    return None


def _result_attr(result: Any, attr: Optional[str]) -> int:
    if not attr:
        return 0
    if isinstance(result, dict):
        return int(result.get(attr, 0) or 0)
    return int(getattr(result, attr, 0) or 0)


def require_feature(feature: str, user_id_param: str = "user_id"):
    """
    Decorator rejecting the request with HTTP 403 unless the user's tier
    includes ``feature``.

    Usage:
        @router.post("/projects/{project_id}/github")
        @require_feature("github_sync")
        async def sync(project_id: str, user_id: str = Depends(get_user_id)):
            ...
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            user_id = _extract_param(func, args, kwargs, user_id_param)
            if not user_id:
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail="Authentication required",
                )

            try:
                await get_feature_gate().require_feature(user_id, feature)
            except FeatureNotAvailableError as e:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=e.to_response_dict(),
                )

            return await func(*args, **kwargs)

        return wrapper

    return decorator


def enforce_quota(
    operation: str,
    user_id_param: str = "user_id",
    provider_param: Optional[str] = None,
    tokens_attr: Optional[str] = None,
    cost_attr: Optional[str] = None,
):
    """
    Decorator checking an operation's quota before the handler and tracking
    it after the handler succeeded.

    Quota errors become HTTP 402 with an upgrade CTA. A BYOK user missing
    credentials for the requested provider gets HTTP 400. If the handler
    raises, nothing is consumed.

    Args:
        operation: 'ai_generation', 'app_creation' or 'workflow_execution'
        user_id_param: Name of the parameter holding the user id
        provider_param: Name of the parameter holding the AI provider
        tokens_attr: Attribute/key in the handler result with tokens used
        cost_attr: Attribute/key in the handler result with estimated cost

    Usage:
        @enforce_quota("ai_generation", tokens_attr="total_tokens")
        async def generate(request: GenerateRequest, user_id: str = Depends(get_user_id)):
            ...
    """
    operation = UsageOperation(operation).value

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            user_id = _extract_param(func, args, kwargs, user_id_param)
            if not user_id:
                logger.warning(f"Could not extract {user_id_param} from function call, skipping quota check")
                return await func(*args, **kwargs)

            facade = get_enforcement_facade()

            if operation == UsageOperation.AI_GENERATION.value:
                provider = _extract_param(func, args, kwargs, provider_param) if provider_param else None
                try:
                    check = await facade.check_ai_generation_allowed(user_id, provider=provider)
                except MissingProviderKeyError as e:
                    raise HTTPException(
                        status_code=status.HTTP_400_BAD_REQUEST,
                        detail={"error": "missing_provider_key", "message": e.message, **e.details},
                    )
            elif operation == UsageOperation.APP_CREATION.value:
                check = await facade.check_app_creation_allowed(user_id)
            else:
                check = await facade.check_workflow_execution_allowed(user_id)

            if not check.allowed:
                detail = check.error.to_response_dict() if check.error else {"error": "quota_exceeded"}
                raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=detail)

            result = await func(*args, **kwargs)

            if operation == UsageOperation.AI_GENERATION.value:
                await facade.track_ai_generation(
                    user_id,
                    tokens=_result_attr(result, tokens_attr),
                    estimated_cost=float(_result_attr(result, cost_attr)) if cost_attr else 0.0,
                )
            elif operation == UsageOperation.APP_CREATION.value:
                await facade.track_app_creation(user_id)
            else:
                await facade.track_workflow_execution(user_id)

            return result

        return wrapper

    return decorator


def enforce_rate_limit(operation: str = "api", user_id_param: str = "user_id"):
    """
    Decorator consuming one unit of the user's burst window for
    ``operation``; HTTP 429 when the window is full.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            user_id = _extract_param(func, args, kwargs, user_id_param)
            if not user_id:
                return await func(*args, **kwargs)

            tier = await get_subscription_manager().get_effective_tier(user_id)
            result = await get_quota_enforcer().consume_rate_limit(user_id, tier, operation)
            if not result.allowed:
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail=result.error.to_response_dict() if result.error else "Rate limit exceeded",
                    headers={"Retry-After": str(result.window_seconds)},
                )

            return await func(*args, **kwargs)

        return wrapper

    return decorator


__all__ = [
    "require_feature",
    "enforce_quota",
    "enforce_rate_limit",
]
