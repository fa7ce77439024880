"""Configuration for payment status reconciliation.

All tunables centralized here - override through environment variables
(or a .env file) without touching code.
"""
import os
from dotenv import load_dotenv

load_dotenv()

# Backend API
API_BASE_URL = os.getenv("PAYMENT_SYNC_API_BASE_URL", "http://localhost:5000/api")
REQUEST_TIMEOUT = float(os.getenv("PAYMENT_SYNC_REQUEST_TIMEOUT", "15"))

# Status reads are the only calls retried inside a single poll tick
READ_RETRIES = int(os.getenv("PAYMENT_SYNC_READ_RETRIES", "2"))

# Circuit breaker
BREAKER_FAILURE_THRESHOLD = int(os.getenv("PAYMENT_SYNC_BREAKER_THRESHOLD", "5"))
BREAKER_TIMEOUT = int(os.getenv("PAYMENT_SYNC_BREAKER_TIMEOUT", "60"))

# Status poller: 60 ticks x 10s = give up after 10 minutes
POLL_INTERVAL = float(os.getenv("PAYMENT_SYNC_POLL_INTERVAL", "10"))
POLL_MAX_TICKS = int(os.getenv("PAYMENT_SYNC_POLL_MAX_TICKS", "60"))

# Session storage
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///payment_sync.db")
SESSION_MAX_AGE_HOURS = 48
PENDING_SYNC_KEY = "pendingPaymentSync"
PROCESSED_PAYMENT_KEY = "paymentProcessed"
COMPLETED_APPOINTMENT_KEY = "completedPaymentAppointmentId"

# Where the client lands after an invalid or failed checkout
SAFE_LANDING_PATH = "/patient/dashboard"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
