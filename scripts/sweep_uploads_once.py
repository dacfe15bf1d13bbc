# scripts/sweep_uploads_once.py
from app.core.config import get_settings
from app.services.scheduler import sweep_stale_uploads


def main():
    settings = get_settings()
    deleted = sweep_stale_uploads(settings.UPLOAD_DIR, settings.UPLOAD_MAX_AGE_MINUTES * 60)
    print({"deleted": deleted})


if __name__ == "__main__":
    main()
