"""Localized messages for rejection responses."""

from typing import Dict, Optional

DEFAULT_LOCALE = "en"

CATALOG: Dict[str, Dict[str, str]] = {
    "en": {
        "error.jwt_secret_missing": "Authentication is not configured",
        "error.auth_header_missing": "Authorization header is required",
        "error.auth_header_invalid": "Authorization header must be 'Bearer <token>'",
        "error.token_invalid": "Token is invalid or expired",
        "error.token_revoked": "Token has been revoked, please sign in again",
        "error.user_disabled": "Account is disabled",
        "error.unauthorized": "Unauthorized",
        "error.forbidden": "You do not have permission to perform this action",
        "error.rate_limited": "Too many requests, please retry in {0} seconds",
        "error.rate_limit_unavailable": "Rate limiting is temporarily unavailable",
        "error.login_rate_limited": "Too many sign-in attempts, please retry in {0} seconds",
        "error.bad_request": "Bad request",
        "error.internal": "Internal server error",
    },
    "zh-CN": {
        "error.jwt_secret_missing": "认证服务未配置",
        "error.auth_header_missing": "缺少 Authorization 请求头",
        "error.auth_header_invalid": "Authorization 格式应为 'Bearer <token>'",
        "error.token_invalid": "令牌无效或已过期",
        "error.token_revoked": "令牌已失效，请重新登录",
        "error.user_disabled": "账号已被禁用",
        "error.unauthorized": "未授权",
        "error.forbidden": "没有权限执行该操作",
        "error.rate_limited": "请求过于频繁，请在 {0} 秒后重试",
        "error.rate_limit_unavailable": "限流服务暂不可用",
        "error.login_rate_limited": "登录尝试过于频繁，请在 {0} 秒后重试",
        "error.bad_request": "请求参数错误",
        "error.internal": "服务器内部错误",
    },
}


def resolve_locale(accept_language: Optional[str]) -> str:
    """Pick the first supported locale from an Accept-Language header."""
    if not accept_language:
        return DEFAULT_LOCALE

    for part in accept_language.split(","):
        tag = part.split(";")[0].strip()
        if not tag:
            continue
        if tag in CATALOG:
            return tag
        lowered = tag.lower()
        if lowered.startswith("zh"):
            return "zh-CN"
        if lowered.startswith("en"):
            return "en"

    return DEFAULT_LOCALE


def translate(locale: str, key: str, *args) -> str:
    """Look up ``key`` for ``locale``, falling back to English then to the key."""
    template = CATALOG.get(locale, {}).get(key) or CATALOG[DEFAULT_LOCALE].get(key)
    if template is None:
        return key
    if args:
        return template.format(*args)
    return template
