# /liveclass/main.py
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

# --- Core / DB ---
from liveclass.core.exceptions import LiveClassError
from liveclass.db.base import Base
from liveclass.db.session import engine

# --- API Routers ---
from liveclass.api.routes import session as session_router
from liveclass.api.routes import attendance as attendance_router


logging.basicConfig(
    level=logging.INFO, # INFO 레벨 이상의 로그를 모두 출력하도록 설정
    format="%(asctime)s - %(levelname)s - %(message)s", # 로그 형식 지정
    force=True # 다른 라이브러리에 의해 이미 설정되었더라도 강제로 재설정
)


# --- Lifespan (애플리케이션 시작/종료 이벤트) ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    # 테이블이 없으면 생성
    Base.metadata.create_all(bind=engine)
    yield

# --- FastAPI App Instance ---
app = FastAPI(
    title="LiveClass API",
    lifespan=lifespan
)

@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.time()

    # 다음 미들웨어나 실제 API 엔드포인트를 호출
    response = await call_next(request)

    process_time = time.time() - start_time

    # 응답 헤더에 처리 시간 추가
    response.headers["X-Process-Time"] = str(process_time)

    # 로그에 API 경로와 처리 시간 기록
    logging.info(
        f"Request processed: {request.method} {request.url.path} - Completed in {process_time:.4f} secs"
    )

    return response


@app.exception_handler(LiveClassError)
async def live_class_error_handler(request: Request, exc: LiveClassError):
    if exc.status_code >= 500:
        logging.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# --- CORS 미들웨어 설정 ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- 라우트 등록 ---
app.include_router(
    session_router.router,
    prefix="/api/v1/sessions",
    tags=["sessions"]
)

app.include_router(
    attendance_router.router,
    prefix="/api/v1/attendance",
    tags=["attendance"]
)
