import os
from dotenv import load_dotenv

# Load Environment Variables from project root .env
env_path = os.path.join(os.path.dirname(__file__), "../.env")
load_dotenv(env_path)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    # ═══════════════════════════════════════════════════════════════════
    # SPLFORGE CONFIGURATION (Environment-Based)
    # ═══════════════════════════════════════════════════════════════════

    # Console output (file log is always written)
    SILENT_MODE = _env_bool("SPLFORGE_SILENT", False)

    # --- Network ---
    NETWORK = os.getenv("SOLANA_NETWORK", "devnet")  # mainnet-beta, testnet, devnet
    RPC_URL = os.getenv("SOLANA_RPC_URL", "https://api.devnet.solana.com")

    # --- Atomic channel (Jito Block Engine) ---
    # Jito does not serve devnet; the orchestrator goes sequential from the start there.
    JITO_ENABLED = _env_bool("JITO_ENABLED", True)
    JITO_REGION = os.getenv("JITO_REGION", "ny")
    JITO_NETWORKS = ("mainnet-beta", "testnet")
    MAX_BUNDLE_SIZE = 5
    BUNDLE_STATUS_POLLS = 15
    BUNDLE_STATUS_INTERVAL_S = 2.0

    # Jito tip accounts (8 total, round-robin)
    JITO_TIP_ACCOUNTS = (
        "96gYZGLnJYVFmbjzopPSU6QiEV5fGqZNyN9nmNhvrZU5",
        "HFqU5x63VTqvQss8hp11i4wVV8bD44PvwucfZ2bU7gRe",
        "Cw8CFyM9FkoMi7K7Crf6HNQqf4uEMzpKw6QNghXLvLkY",
        "ADaUMid9yfUytqMBgopwjb2DTLSokTSzL1zt6iGPaS49",
        "DfXygSm4jCyNCybVYYK6DwvWqjKee8pbDmJGcLWNDXjh",
        "ADuUkR4vqLUMWXxW9gh6D6L8pMSawimctcNZ5pGwDcEt",
        "DttWaMuVvTiduZRnguLF7jNxTgiMBZ1hyAumKUiL2KRL",
        "3AVi9Tg9Uo68tJfuvoKvqKNWKkC5wPdSSdeBnizKZ6jT",
    )

    # --- Fees (monotonic per operation; escalated by the retry controller) ---
    DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS = int(os.getenv("PRIORITY_FEE_MICRO_LAMPORTS", "1000"))
    DEFAULT_COMPUTE_UNIT_LIMIT = 200_000
    DEFAULT_TIP_LAMPORTS = int(os.getenv("JITO_TIP_LAMPORTS", "10000"))
    MAX_TIP_LAMPORTS = 1_000_000

    # --- Confirmation polling ---
    CONFIRMATION_MAX_POLLS = 30
    CONFIRMATION_POLL_INTERVAL_S = 1.0

    # --- Retry controller ---
    MAX_GLOBAL_RETRIES = int(os.getenv("MAX_GLOBAL_RETRIES", "8"))
    RETRY_JITTER_MAX_S = 1.0

    # --- Ledger limits ---
    MAX_TRANSACTION_BYTES = 1232
    MINT_ACCOUNT_SPACE = 82
    TOKEN_ACCOUNT_SPACE = 165
    TX_FEE_BUFFER_LAMPORTS = 5_000_000  # 0.005 SOL
    METADATA_FEE_LAMPORTS = 15_616_720  # Metaplex metadata account rent
    POOL_ACCOUNT_SPACE = 324

    # --- Operation bounds ---
    MAX_NAME_LENGTH = 32
    MAX_SYMBOL_LENGTH = 10
    MAX_DECIMALS = 9
    MAX_SUPPLY = 1_000_000_000_000  # 1 trillion
    MAX_DESCRIPTION_LENGTH = 200
    DISTRIBUTION_BATCH_SIZE = 4

    # --- Signing ---
    PRIVATE_KEY = os.getenv("SOLANA_PRIVATE_KEY", "")

    # --- External collaborators ---
    METADATA_STORE_URL = os.getenv("METADATA_STORE_URL", "")
    METADATA_STORE_TOKEN = os.getenv("METADATA_STORE_TOKEN", "")
    POOL_PROGRAM_ID = os.getenv(
        "POOL_PROGRAM_ID", "srmqPvymJeFKQ4zGQed1GFppgkRHL9kaELCbyksJtPX"
    )  # OpenBook

    @classmethod
    def atomic_channel_enabled(cls) -> bool:
        """Jito bundles exist only on mainnet-beta and testnet."""
        return cls.JITO_ENABLED and cls.NETWORK in cls.JITO_NETWORKS
