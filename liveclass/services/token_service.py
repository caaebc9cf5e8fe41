from datetime import datetime, timedelta, timezone
from jose import jwt

from liveclass.core.config import settings

def create_access_token(data: dict, expires_delta: timedelta = None) -> str:
    """
    외부 인증 서비스(와 테스트)가 같은 비밀키로 access token 을 발급할 때 사용.
    sub 에는 user id 를 문자열로 넣는다.
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
