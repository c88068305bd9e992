import os
import sys
from pathlib import Path

# Set environment variables BEFORE importing app modules so settings load cleanly
os.environ["JWT_SECRET"] = "test-secret-key-for-pytest-only-12345"
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("APP_ID", "test-hostel")
# The module-level app builds its store on startup; tests hand in their own
os.environ.setdefault("STORE_BACKEND", "memory")

# Add the backend directory to sys.path so imports work without an install
BACKEND_PATH = Path(__file__).parent / "fastapi-backend"
if str(BACKEND_PATH) not in sys.path:
    sys.path.append(str(BACKEND_PATH))
