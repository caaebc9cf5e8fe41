from sqlalchemy import Column, Integer, String
from liveclass.db.base import Base

INSTRUCTOR = "instructor"
STUDENT = "student"


class User(Base):
    __tablename__ = "user"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    # 'instructor' 또는 'student'
    role = Column(String(20), nullable=False, default=STUDENT)

    @property
    def is_instructor(self) -> bool:
        return self.role == INSTRUCTOR
