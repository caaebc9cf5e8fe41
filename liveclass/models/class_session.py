from sqlalchemy import Column, Integer, String, Text, ForeignKey, Boolean, DateTime, TIMESTAMP, func
from sqlalchemy.orm import relationship
from liveclass.db.base import Base

class ClassSession(Base):
    __tablename__ = "class_session"

    id = Column(Integer, primary_key=True, index=True)
    course_id = Column(Integer, ForeignKey("course.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)

    is_active = Column(Boolean, nullable=False, default=False)
    is_completed = Column(Boolean, nullable=False, default=False)
    activated_at = Column(DateTime(timezone=True), nullable=True)

    # 화상회의 방 정보 (처음 start/join 할 때 채워짐)
    meeting_id = Column(String(255), nullable=True)
    video_link = Column(String(1023), nullable=True)
    video_provider = Column(String(20), nullable=False, default="jitsi")
    recording_url = Column(String(1023), nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    # 동시 수정 감지용 버전 (마지막 쓰기가 조용히 이기지 않도록)
    version = Column(Integer, nullable=False)

    course = relationship("Course", backref="sessions")

    __mapper_args__ = {"version_id_col": version}
