"""Commission, compensation and audit ledger services for multi-clinic practices."""

APP_NAME = "ClinicLedger"

__version__ = "0.4.0"
