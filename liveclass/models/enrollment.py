from sqlalchemy import Column, Integer, ForeignKey, TIMESTAMP, func, String
from liveclass.db.base import Base

class Enrollment(Base):
    __tablename__ = "enrollment"

    id = Column(Integer, primary_key=True, autoincrement=True)
    course_id = Column(Integer, ForeignKey("course.id"), nullable=False)
    student_id = Column(Integer, ForeignKey("user.id"), nullable=False)
    # 'active' 인 수강만 세션 접근 권한이 있음
    status = Column(String(20), nullable=False, default="active")
    enrolled_at = Column(TIMESTAMP, server_default=func.now())
