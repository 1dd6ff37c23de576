"""
Supabase client shared by every request.

Tables used by the API:
- User: accounts (iduser, username, name, email, password, role, photoprofile)
- Categories: business categories (IDCategories, name)
- Umkm: business records (IDUmkm, ..., rating, total_rating, is_active)
- Comments: reviews left on a business (IDComments, user, umkm, content, rating)
"""

import logging
from functools import lru_cache

from fastapi import Request
from supabase import Client, create_client

logger = logging.getLogger(__name__)


@lru_cache(maxsize=4)
def connect(url: str, service_role_key: str) -> Client:
    logger.info("Connecting to Supabase at %s", url)
    return create_client(url, service_role_key)


def get_db(request: Request) -> Client:
    """Return the process-wide client for the app's configured project."""
    settings = request.app.state.settings
    if not settings.supabase_url:
        raise RuntimeError("Missing SUPABASE_URL in environment variables")
    if not settings.supabase_service_role_key:
        raise RuntimeError("Missing SUPABASE_SERVICE_ROLE_KEY in environment variables")
    return connect(settings.supabase_url, settings.supabase_service_role_key)
