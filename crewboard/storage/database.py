from sqlalchemy import Boolean, Column, Date, DateTime, Integer, JSON, String, UniqueConstraint, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime
from crewboard.config.settings import get_settings

settings = get_settings()

engine = create_engine(settings.postgres_dsn, pool_pre_ping=True, echo=False)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


class MagnetInteractionRuleModel(Base):
    __tablename__ = "magnet_interaction_rules"
    __table_args__ = (UniqueConstraint("source_type", "target_type", name="uq_magnet_rule_pair"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_type = Column(String, nullable=False)
    target_type = Column(String, nullable=False)
    can_attach = Column(Boolean, nullable=False, default=False)
    is_required = Column(Boolean, nullable=False, default=False)
    max_count = Column(Integer, nullable=True)
    required_credentials = Column(JSON, nullable=True)  # List[str]
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class DropRuleModel(Base):
    __tablename__ = "drop_rules"

    row_type = Column(String, primary_key=True)
    allowed_types = Column(JSON, nullable=False)  # List[str]
    capacity = Column(Integer, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class JobRowConfigModel(Base):
    __tablename__ = "job_row_configs"

    job_id = Column(String, primary_key=True)
    row_type = Column(String, primary_key=True)
    boxes = Column(JSON, nullable=False)  # List[box dict], boxes may nest sub_boxes
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ResourceModel(Base):
    __tablename__ = "resources"

    id = Column(String, primary_key=True)
    type = Column(String, nullable=False)
    name = Column(String, nullable=False, default="")
    on_site = Column(Boolean, nullable=False, default=False)
    certifications = Column(JSON, nullable=True)  # List[str]
    skills = Column(JSON, nullable=True)  # List[str]
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class JobModel(Base):
    __tablename__ = "jobs"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, default="")
    shift = Column(String, nullable=False, default="day")
    finalized = Column(Boolean, nullable=False, default=False)
    start_time = Column(String, nullable=False, default="07:00")
    schedule_date = Column(Date, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


def init_db():
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
