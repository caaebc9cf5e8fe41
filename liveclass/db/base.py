from sqlalchemy.orm import declarative_base

Base = declarative_base()
import liveclass.models.user
import liveclass.models.course
import liveclass.models.enrollment
import liveclass.models.class_session
import liveclass.models.attendance
