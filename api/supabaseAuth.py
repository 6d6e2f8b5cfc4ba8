# supabaseAuth.py
import logging
from typing import Any, Dict, Optional

import jwt

from config import AppConfig

logger = logging.getLogger(__name__)


def verify_supabase_token(token: str, config: AppConfig) -> Optional[Dict[str, Any]]:
    if not config.supabase_jwt_secret:
        logger.error("SUPABASE_JWT_SECRET is not set; rejecting token")
        return None

    try:
        return jwt.decode(
            token,
            config.supabase_jwt_secret,
            algorithms=["HS256"],
            audience="authenticated",
            issuer=config.jwt_issuer,
        )
    except jwt.PyJWTError as e:
        logger.info("Rejected token: %s", e)
        return None
