# trademarket/auth.py
import time

import httpx
from jose import JWTError, jwt

from .config import Settings
from .errors import Unauthenticated
from .logging_config import get_logger

logger = get_logger("trademarket.auth")

_cache = {"jwks": None, "fetched_at": 0}
JWKS_TTL_SECONDS = 600


def _auth_base(settings: Settings) -> str:
    if settings.supabase_url:
        return f"{settings.supabase_url.rstrip('/')}/auth/v1"
    if settings.supabase_project_ref:
        return f"https://{settings.supabase_project_ref}.supabase.co/auth/v1"
    raise RuntimeError("SUPABASE_URL or SUPABASE_PROJECT_REF must be set")


async def _get_jwks(settings: Settings) -> dict:
    now = time.time()
    if not _cache["jwks"] or now - _cache["fetched_at"] > JWKS_TTL_SECONDS:
        headers = {}
        if settings.supabase_anon_key:
            headers = {
                "apikey": settings.supabase_anon_key,
                "Authorization": f"Bearer {settings.supabase_anon_key}",
            }
        async with httpx.AsyncClient(timeout=10) as client:
            resp = await client.get(f"{_auth_base(settings)}/.well-known/jwks.json", headers=headers)
        resp.raise_for_status()
        _cache["jwks"] = resp.json()
        _cache["fetched_at"] = now
    return _cache["jwks"]


async def _fetch_user_id_from_supabase(token: str, settings: Settings) -> str:
    """Fallback: ask Supabase who this token belongs to."""
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": settings.supabase_anon_key or "",
    }
    async with httpx.AsyncClient(timeout=10) as client:
        r = await client.get(f"{_auth_base(settings)}/user", headers=headers)
    if r.status_code != 200:
        raise Unauthenticated("Could not verify token with Supabase")
    data = r.json() or {}
    uid = data.get("id") or (data.get("user") or {}).get("id")
    if not uid:
        raise Unauthenticated("User id not found from Supabase")
    return uid


def _subject(claims: dict) -> str:
    sub = claims.get("sub")
    if not sub:
        raise Unauthenticated("Token missing subject (sub)")
    return sub


async def verify_and_get_user_id(token: str, settings: Settings) -> str:
    """
    Accepts Supabase access tokens signed with:
      - HS256 (JWT secret)  -> verify with SUPABASE_JWT_SECRET
      - RS256 (JWKS)        -> verify with JWKS
    Falls back to /auth/v1/user if needed.
    """
    if not token:
        raise Unauthenticated("Missing bearer token")

    try:
        unverified_header = jwt.get_unverified_header(token)
        alg = (unverified_header.get("alg") or "").upper()
    except JWTError:
        return await _fetch_user_id_from_supabase(token, settings)

    issuer = _auth_base(settings)

    if alg == "HS256":
        if not settings.supabase_jwt_secret:
            return await _fetch_user_id_from_supabase(token, settings)
        try:
            claims = jwt.decode(
                token,
                settings.supabase_jwt_secret,
                algorithms=["HS256"],
                options={"verify_aud": False},
                issuer=issuer,
            )
        except JWTError as e:
            logger.info("Rejected HS256 token: %s", e)
            raise Unauthenticated(f"Invalid token (HS256): {e}")
        return _subject(claims)

    if alg == "RS256":
        jwks = await _get_jwks(settings)
        kid = unverified_header.get("kid")
        key = next((k for k in jwks.get("keys", []) if k.get("kid") == kid), None)
        if not key:
            raise Unauthenticated("Signing key not found")
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=["RS256"],
                options={"verify_aud": False},
                issuer=issuer,
            )
        except JWTError as e:
            logger.info("Rejected RS256 token: %s", e)
            raise Unauthenticated(f"Invalid token (RS256): {e}")
        return _subject(claims)

    # Unknown/other alg
    return await _fetch_user_id_from_supabase(token, settings)
