"""
Application settings for the sales ingestion backend.
"""
from pydantic_settings import BaseSettings
from typing import Dict, List


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./data/sales.db"

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # File storage
    DATA_DIR: str = "./data"
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024

    # Remote sources
    DOWNLOAD_TIMEOUT_SECONDS: float = 30.0
    DOWNLOAD_RETRIES: int = 3

    # Customer identity fallbacks
    SENTINEL_PHONE: str = "9999999999"
    CASHLIST_CUSTOMER_NAME: str = "Cashlist Customer"
    UNKNOWN_CUSTOMER_NAME: str = "Unknown Customer"

    # Store identity
    KNOWN_STORES: List[str] = [
        "RUCHIKA",
        "MOUSIMAA",
        "DUMDUMA",
        "SUM HOSPITAL",
        "SAMANTARAPUR",
        "GGP COLONY",
        "CHANDRASEKHARPUR",
        "KALINGA VIHAR",
        "VSS NAGAR",
        "IRC VILLAGE",
    ]
    STORE_NAME_ALIASES: Dict[str, str] = {"IRC VILAGE": "IRC VILLAGE"}
    FALLBACK_STORE_NAME: str = "WEKEYAR PLUS"
    FALLBACK_STORE_ADDRESS: str = (
        "AT.PLOT NO.210,DISTRICT CENTRE, PO.CHANDRASEKHARPUR, "
        "BHUBANESWAR,ODISHA. PIN CODE 751019"
    )

    # Receipt heuristics (positional conventions observed in sample receipts)
    ITEM_LOOKAHEAD: int = 10
    ITEM_PRICE_SLOT: int = 1
    ITEM_DISCOUNT_SLOT: int = 6
    STORE_LOOKAHEAD: int = 4

    # Spreadsheet heuristics
    SHEET_HEADER_ROWS: int = 10
    SHEET_DATE_LOOKBEHIND: int = 5
    SHEET_PAYMENT_RADIUS: int = 3

    # Progress reporting
    PARSE_PROGRESS_SHARE: float = 90.0
    PROGRESS_STEP: float = 0.1
    SSE_KEEPALIVE_SECONDS: float = 15.0
    CANCEL_GRACE_SECONDS: float = 5.0
    # How long a finished job id blocks a second terminal event
    TERMINAL_RETENTION_SECONDS: float = 300.0

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
