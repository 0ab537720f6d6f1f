from typing import List, Optional

from sqlalchemy.orm import Session

from crewboard.models.entities import Job, Resource, ResourceType, RowType, Shift
from crewboard.models.rules import DropRule, JobRowConfig, MagnetInteractionRule, RuleTables, box_from_dict, box_to_dict
from crewboard.storage.database import DropRuleModel, JobModel, JobRowConfigModel, MagnetInteractionRuleModel, ResourceModel


class RuleRepository:
    """Read side of the external rule source, plus upserts used by admin tooling and tests."""

    def __init__(self, db: Session):
        self.db = db

    def load_tables(self) -> RuleTables:
        magnet_rules = [
            self._model_to_magnet_rule(m)
            for m in self.db.query(MagnetInteractionRuleModel).order_by(MagnetInteractionRuleModel.id).all()
        ]
        drop_rules = [self._model_to_drop_rule(m) for m in self.db.query(DropRuleModel).all()]
        configs = [self._model_to_row_config(m) for m in self.db.query(JobRowConfigModel).all()]
        return RuleTables.build(magnet_rules, drop_rules, configs)

    def save_magnet_rule(self, rule: MagnetInteractionRule) -> None:
        existing = (
            self.db.query(MagnetInteractionRuleModel)
            .filter(MagnetInteractionRuleModel.source_type == rule.source_type.value)
            .filter(MagnetInteractionRuleModel.target_type == rule.target_type.value)
            .first()
        )
        if existing:
            existing.can_attach = rule.can_attach
            existing.is_required = rule.is_required
            existing.max_count = rule.max_count
            existing.required_credentials = list(rule.required_credentials)
        else:
            self.db.add(MagnetInteractionRuleModel(
                source_type=rule.source_type.value,
                target_type=rule.target_type.value,
                can_attach=rule.can_attach,
                is_required=rule.is_required,
                max_count=rule.max_count,
                required_credentials=list(rule.required_credentials),
            ))
        self.db.commit()

    def save_drop_rule(self, rule: DropRule) -> None:
        allowed = sorted(t.value for t in rule.allowed_types)
        existing = self.db.query(DropRuleModel).filter(DropRuleModel.row_type == rule.row_type.value).first()
        if existing:
            existing.allowed_types = allowed
            existing.capacity = rule.capacity
        else:
            self.db.add(DropRuleModel(row_type=rule.row_type.value, allowed_types=allowed, capacity=rule.capacity))
        self.db.commit()

    def save_job_row_config(self, config: JobRowConfig) -> None:
        boxes = [box_to_dict(b) for b in config.boxes]
        existing = (
            self.db.query(JobRowConfigModel)
            .filter(JobRowConfigModel.job_id == config.job_id)
            .filter(JobRowConfigModel.row_type == config.row_type.value)
            .first()
        )
        if existing:
            existing.boxes = boxes
        else:
            self.db.add(JobRowConfigModel(job_id=config.job_id, row_type=config.row_type.value, boxes=boxes))
        self.db.commit()

    @staticmethod
    def _model_to_magnet_rule(model: MagnetInteractionRuleModel) -> MagnetInteractionRule:
        return MagnetInteractionRule(
            source_type=ResourceType(model.source_type),
            target_type=ResourceType(model.target_type),
            can_attach=bool(model.can_attach),
            is_required=bool(model.is_required),
            max_count=model.max_count,
            required_credentials=tuple(model.required_credentials or ()),
        )

    @staticmethod
    def _model_to_drop_rule(model: DropRuleModel) -> DropRule:
        return DropRule(
            row_type=RowType(model.row_type),
            allowed_types=frozenset(ResourceType(t) for t in model.allowed_types or []),
            capacity=model.capacity,
        )

    @staticmethod
    def _model_to_row_config(model: JobRowConfigModel) -> JobRowConfig:
        return JobRowConfig(
            job_id=model.job_id,
            row_type=RowType(model.row_type),
            boxes=tuple(box_from_dict(b) for b in model.boxes or []),
        )


class ResourceRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, resource_id: str) -> Optional[Resource]:
        model = self.db.query(ResourceModel).filter(ResourceModel.id == resource_id).first()
        if not model:
            return None
        return self._model_to_resource(model)

    def list_all(self) -> List[Resource]:
        models = self.db.query(ResourceModel).all()
        return [self._model_to_resource(m) for m in models]

    def save(self, resource: Resource) -> None:
        existing = self.db.query(ResourceModel).filter(ResourceModel.id == resource.id).first()
        if existing:
            existing.type = resource.type.value
            existing.name = resource.name
            existing.on_site = resource.on_site
            existing.certifications = sorted(resource.certifications)
            existing.skills = sorted(resource.skills)
        else:
            model = ResourceModel(
                id=resource.id,
                type=resource.type.value,
                name=resource.name,
                on_site=resource.on_site,
                certifications=sorted(resource.certifications),
                skills=sorted(resource.skills),
            )
            self.db.add(model)
        self.db.commit()

    @staticmethod
    def _model_to_resource(model: ResourceModel) -> Resource:
        return Resource(
            id=model.id,
            type=ResourceType(model.type),
            name=model.name or "",
            on_site=bool(model.on_site),
            certifications=frozenset(model.certifications or ()),
            skills=frozenset(model.skills or ()),
        )


class JobRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, job_id: str) -> Optional[Job]:
        model = self.db.query(JobModel).filter(JobModel.id == job_id).first()
        if not model:
            return None
        return self._model_to_job(model)

    def list_all(self) -> List[Job]:
        models = self.db.query(JobModel).all()
        return [self._model_to_job(m) for m in models]

    def save(self, job: Job) -> None:
        existing = self.db.query(JobModel).filter(JobModel.id == job.id).first()
        if existing:
            existing.name = job.name
            existing.shift = job.shift.value
            existing.finalized = job.finalized
            existing.start_time = job.start_time
            existing.schedule_date = job.schedule_date
        else:
            model = JobModel(
                id=job.id,
                name=job.name,
                shift=job.shift.value,
                finalized=job.finalized,
                start_time=job.start_time,
                schedule_date=job.schedule_date,
            )
            self.db.add(model)
        self.db.commit()

    @staticmethod
    def _model_to_job(model: JobModel) -> Job:
        return Job(
            id=model.id,
            name=model.name or "",
            shift=Shift(model.shift),
            finalized=bool(model.finalized),
            start_time=model.start_time or "07:00",
            schedule_date=model.schedule_date,
        )
