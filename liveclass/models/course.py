from sqlalchemy import Column, Integer, String, ForeignKey
from sqlalchemy.orm import relationship
from liveclass.db.base import Base

class Course(Base):
    __tablename__ = "course"

    id = Column(Integer, primary_key=True, index=True)
    instructor_id = Column(Integer, ForeignKey("user.id"), nullable=False)
    title = Column(String(255), nullable=False)
    code = Column(String(50), nullable=True)

    instructor = relationship("User", backref="courses")
