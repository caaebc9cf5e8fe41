from sqlalchemy import Column, Integer, String, Text, ForeignKey, DateTime
from liveclass.db.base import Base

ATTENDANCE_STATUSES = ("present", "absent", "late", "excused")


class Attendance(Base):
    __tablename__ = "attendance"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("class_session.id"), nullable=False, index=True)
    student_id = Column(Integer, ForeignKey("user.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="present")  # present / absent / late / excused
    notes = Column(Text, nullable=False, default="")
    # 강의자가 결석 등으로 직접 기록한 경우 입장 시각이 없다
    join_time = Column(DateTime(timezone=True), nullable=True)
    leave_time = Column(DateTime(timezone=True), nullable=True)
    duration_minutes = Column(Integer, nullable=False, default=0)
