import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./liveclass.db")
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "jwt-secret")
    JWT_ALGORITHM = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60))

    # 화상회의 (Jitsi)
    JITSI_DOMAIN = os.getenv("JITSI_DOMAIN", "meet.jit.si")
    CONFERENCE_MAX_ATTEMPTS = int(os.getenv("CONFERENCE_MAX_ATTEMPTS", 3))
    CONFERENCE_RETRY_BACKOFF_SECONDS = float(os.getenv("CONFERENCE_RETRY_BACKOFF_SECONDS", 0.5))
    ROSTER_POLL_INTERVAL_SECONDS = float(os.getenv("ROSTER_POLL_INTERVAL_SECONDS", 30))

    # 입장 가능 시간 (시작 전 몇 분부터)
    INSTRUCTOR_JOIN_BUFFER_MINUTES = int(os.getenv("INSTRUCTOR_JOIN_BUFFER_MINUTES", 15))
    STUDENT_JOIN_BUFFER_MINUTES = int(os.getenv("STUDENT_JOIN_BUFFER_MINUTES", 5))

    INACTIVITY_TIMEOUT_MINUTES = int(os.getenv("INACTIVITY_TIMEOUT_MINUTES", 30))
    STATUS_POLL_INTERVAL_SECONDS = float(os.getenv("STATUS_POLL_INTERVAL_SECONDS", 10))

    API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")

settings = Settings()
