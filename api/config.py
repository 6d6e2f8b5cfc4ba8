# config.py
import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv


def _split(value: Optional[str], default: str) -> List[str]:
    raw = value if value is not None else default
    return [p.strip() for p in raw.split(",") if p.strip()]


@dataclass
class AppConfig:
    db_url: Optional[str] = None
    supabase_project_id: Optional[str] = None
    supabase_jwt_secret: Optional[str] = None
    app_env: str = "production"
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:5173"])
    public_prefixes: List[str] = field(default_factory=lambda: ["/api/health"])
    db_statement_timeout_ms: int = 5000
    db_pool_timeout_seconds: int = 10

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def jwt_issuer(self) -> Optional[str]:
        if not self.supabase_project_id:
            return None
        return f"https://{self.supabase_project_id}.supabase.co/auth/v1"

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "AppConfig":
        load_dotenv(dotenv_path)

        return cls(
            db_url=os.getenv("SUPABASE_DB_URL"),
            supabase_project_id=os.getenv("SUPABASE_PROJECT_ID"),
            supabase_jwt_secret=os.getenv("SUPABASE_JWT_SECRET"),
            app_env=os.getenv("APP_ENV", "production"),
            cors_origins=_split(os.getenv("CORS_ORIGINS"), "http://localhost:5173"),
            public_prefixes=_split(os.getenv("AUTH_PUBLIC_PREFIXES"), "/api/health"),
            db_statement_timeout_ms=int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "5000")),
            db_pool_timeout_seconds=int(os.getenv("DB_POOL_TIMEOUT_SECONDS", "10")),
        )
