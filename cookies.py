"""
Centralized cookie management for NutriTrack
Kept apart from app.py so csrf_protection.py can use it without a circular import
"""

import os
import logging

from flask import request, has_request_context

logger = logging.getLogger(__name__)

# ============================================================================
# COOKIE CONFIGURATION
# ============================================================================

SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "nt_session")
CSRF_COOKIE_NAME = "nt_csrf"
CSRF_COOKIE_MAX_AGE = 7200

# Host-only cookies unless a shared parent domain is configured
SESSION_COOKIE_DOMAIN = os.getenv("SESSION_COOKIE_DOMAIN") or None
SESSION_SAMESITE = os.getenv("SESSION_SAMESITE", "Lax")
SESSION_SECURE = os.getenv("SESSION_SECURE", "true" if os.getenv("APP_ENV") == "production" else "false").lower() == "true"


def get_cookie_options():
    """
    Standard cookie options for the platform

    Returns:
        dict: Cookie options with domain, path and security settings
    """
    return {
        'domain': SESSION_COOKIE_DOMAIN,
        'path': '/',
        'httponly': True,
        'secure': SESSION_SECURE,
        'samesite': SESSION_SAMESITE,
    }


def _domain_for_request(configured_domain):
    # Fall back to a host-only cookie when the request host is outside the configured domain
    if not configured_domain or not has_request_context():
        return configured_domain

    host = request.host.split(':')[0]
    if not host.endswith(configured_domain.lstrip('.')):
        logger.info(f"cookie_issue reason=domain_mismatch host={host}")
        return None
    return configured_domain


def set_cookie(response, name, value, max_age=None, httponly=True):
    """
    Set a cookie with the standard options

    Args:
        response: Flask response object
        name (str): Cookie name
        value (str): Cookie value
        max_age (int, optional): Cookie max age in seconds
        httponly (bool): Whether the cookie is hidden from JavaScript

    Returns:
        Flask response object with cookie set
    """
    cookie_opts = get_cookie_options()
    cookie_opts['httponly'] = httponly
    cookie_opts['domain'] = _domain_for_request(cookie_opts['domain'])

    response.set_cookie(name, value, max_age=max_age, **cookie_opts)
    return response


def clear_cookie(response, name):
    """Expire a cookie immediately"""
    cookie_opts = get_cookie_options()
    cookie_opts['domain'] = _domain_for_request(cookie_opts['domain'])
    response.set_cookie(name, "", max_age=0, expires=0, **cookie_opts)
    return response


def set_csrf_cookie(response, csrf_token, max_age=CSRF_COOKIE_MAX_AGE):
    # JS-readable for the double-submit pattern
    return set_cookie(response, CSRF_COOKIE_NAME, csrf_token, max_age=max_age, httponly=False)


def clear_session_cookie(response):
    return clear_cookie(response, SESSION_COOKIE_NAME)


def clear_csrf_cookie(response):
    return clear_cookie(response, CSRF_COOKIE_NAME)


def clear_all_auth_cookies(response):
    """
    Clear all authentication-related cookies

    Args:
        response: Flask response object

    Returns:
        Flask response object with all auth cookies cleared
    """
    clear_session_cookie(response)
    clear_csrf_cookie(response)
    return response
