from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Match server configuration
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    # Match freshness
    heartbeat_timeout: int = 120  # Seconds before a match drops out of the list
    recent_window: int = 30       # Seconds a match is flagged as recent
    max_listed_matches: int = 100
    default_max_players: int = 8

    # Rate limiting (per client IP and path)
    rate_limit_requests: int = 15
    rate_limit_window: int = 60
    trust_forwarded_for: bool = False  # Only enable behind a trusted proxy

    # Request body limit
    max_body_bytes: int = 10 * 1024

    # Server cleanup
    cleanup_interval: int = 30   # How often to sweep rate limiter state
    stale_match_ttl: int = 0     # Seconds before stale matches are evicted, 0 disables

    # CORS
    allowed_origins: list = ["*"]

    class Config:
        env_file = ".env"

settings = Settings()
