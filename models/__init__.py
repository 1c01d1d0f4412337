"""Core data models for citizen reports, assignment workflow, moderation, and audit trails."""
import enum
import uuid
from datetime import datetime

from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db


def generate_uuid() -> str:
	return str(uuid.uuid4())


class ReportStatus(str, enum.Enum):
	OPEN = "OPEN"
	DUPLICATE = "DUPLICATE"
	MERGED = "MERGED"
	VALIDATED = "VALIDATED"
	IN_BIDDING = "IN_BIDDING"
	ASSIGNED = "ASSIGNED"
	IN_PROGRESS = "IN_PROGRESS"
	PENDING_CITIZEN_REVIEW = "PENDING_CITIZEN_REVIEW"
	COMPLETED = "COMPLETED"
	VERIFIED = "VERIFIED"
	CLOSED = "CLOSED"
	REJECTED = "REJECTED"
	AUTO_CLOSED = "AUTO_CLOSED"

	@classmethod
	def parse(cls, value) -> "ReportStatus | None":
		if isinstance(value, cls):
			return value
		try:
			return cls(str(value or "").strip().upper())
		except ValueError:
			return None


REPORT_STATUSES: tuple[str, ...] = tuple(s.value for s in ReportStatus)

TERMINAL_STATUSES: frozenset[ReportStatus] = frozenset(
	{
		ReportStatus.CLOSED,
		ReportStatus.REJECTED,
		ReportStatus.AUTO_CLOSED,
		ReportStatus.VERIFIED,
	}
)

ROLES: tuple[str, ...] = (
	"CITIZEN",
	"CONTRACTOR",
	"MODERATOR",
	"ADMIN",
	"SUPERADMIN",
)

ASSIGNMENT_STATUSES: tuple[str, ...] = (
	"ASSIGNED",
	"IN_PROGRESS",
	"COMPLETED",
	"CANCELLED",
)

ACTIVE_ASSIGNMENT_STATUSES: tuple[str, ...] = ("ASSIGNED", "IN_PROGRESS")

BID_STATUSES: tuple[str, ...] = (
	"PENDING",
	"ACCEPTED",
	"REJECTED",
)

PROOF_STATUSES: tuple[str, ...] = (
	"PENDING",
	"APPROVED",
	"REJECTED",
)

MODERATION_ACTIONS: tuple[str, ...] = (
	"FLAG_SPAM",
	"MARK_SENSITIVE",
	"HIDE",
	"APPROVE",
	"MARK_DUPLICATE",
	"ESCALATE",
	"REJECT",
	"UNFLAG",
)

AUDIT_ENTITY_TYPES: tuple[str, ...] = (
	"REPORT",
	"USER",
	"WARD",
	"CONTRACTOR",
	"PROOF",
	"BID",
	"ASSIGNMENT",
)

REACTION_TYPES: tuple[str, ...] = ("UPVOTE",)

SYSTEM_ACTOR_ID = "SYSTEM"


def _in_clause(column: str, values) -> str:
	return f"{column} IN ({','.join(repr(v) for v in values)})"


class User(UserMixin, db.Model):
	__tablename__ = "users"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	full_name = db.Column(db.String(150), nullable=False)
	email = db.Column(db.String(255), unique=True, nullable=False, index=True)
	password_hash = db.Column(db.String(255), nullable=True)
	api_token_hash = db.Column(db.String(128), unique=True, nullable=True, index=True)
	role = db.Column(db.String(20), nullable=False, default="CITIZEN", index=True)
	is_active = db.Column(db.Boolean, default=True, nullable=False)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	last_login_at = db.Column(db.DateTime, nullable=True)

	__table_args__ = (db.CheckConstraint(_in_clause("role", ROLES), name="ck_user_role"),)

	reports = db.relationship("Report", back_populates="reporter", lazy="dynamic")
	contractor_profile = db.relationship("Contractor", back_populates="user", uselist=False)

	def set_password(self, password: str) -> None:
		self.password_hash = generate_password_hash(password, method="pbkdf2:sha256", salt_length=16)

	def check_password(self, password: str) -> bool:
		if not self.password_hash:
			return False
		return check_password_hash(self.password_hash, password)

	@property
	def is_admin(self) -> bool:
		return self.role in {"ADMIN", "SUPERADMIN"}

	@property
	def active(self) -> bool:  # Flask-Login compatibility alias
		return self.is_active


class Ward(db.Model):
	__tablename__ = "wards"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	name = db.Column(db.String(150), nullable=False, index=True)
	state = db.Column(db.String(100), nullable=False, index=True)
	district = db.Column(db.String(100), nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

	__table_args__ = (db.UniqueConstraint("name", "state", "district", name="uq_ward_name_location"),)

	reports = db.relationship("Report", back_populates="ward", lazy="dynamic")
	departments = db.relationship("Department", back_populates="ward", lazy="dynamic")

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"name": self.name,
			"state": self.state,
			"district": self.district,
			"created_at": self.created_at.isoformat() if self.created_at else None,
		}


class Department(db.Model):
	__tablename__ = "departments"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	name = db.Column(db.String(255), nullable=False, index=True)
	official_email = db.Column(db.String(255), nullable=True)
	ward_id = db.Column(db.String(36), db.ForeignKey("wards.id"), nullable=True, index=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

	ward = db.relationship("Ward", back_populates="departments")

	def to_dict(self) -> dict:
		return {"id": self.id, "name": self.name, "ward_id": self.ward_id}


class Contractor(db.Model):
	__tablename__ = "contractors"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, unique=True, index=True)
	business_name = db.Column(db.String(255), nullable=False, index=True)
	email = db.Column(db.String(255), nullable=True)
	phone = db.Column(db.String(50), nullable=True)
	avg_rating = db.Column(db.Float, nullable=False, default=0.0)
	completed_jobs = db.Column(db.Integer, nullable=False, default=0)
	is_verified = db.Column(db.Boolean, nullable=False, default=False)
	is_blocked = db.Column(db.Boolean, nullable=False, default=False, index=True)
	block_reason = db.Column(db.String(500), nullable=True)
	blocked_at = db.Column(db.DateTime, nullable=True)
	blocked_by = db.Column(db.String(36), nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	user = db.relationship("User", back_populates="contractor_profile")
	bids = db.relationship("Bid", back_populates="contractor", lazy="dynamic")
	assignments = db.relationship("Assignment", back_populates="contractor", lazy="dynamic")

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"business_name": self.business_name,
			"avg_rating": self.avg_rating,
			"completed_jobs": self.completed_jobs,
			"is_verified": self.is_verified,
			"is_blocked": self.is_blocked,
			"block_reason": self.block_reason,
			"blocked_at": self.blocked_at.isoformat() if self.blocked_at else None,
			"blocked_by": self.blocked_by,
		}


class Report(db.Model):
	__tablename__ = "reports"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	reporter_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	ward_id = db.Column(db.String(36), db.ForeignKey("wards.id"), nullable=False, index=True)
	department_id = db.Column(db.String(36), db.ForeignKey("departments.id"), nullable=True, index=True)
	title = db.Column(db.String(255), nullable=False)
	description = db.Column(db.Text, nullable=True)
	latitude = db.Column(db.Float, nullable=False)
	longitude = db.Column(db.Float, nullable=False)
	address = db.Column(db.String(500), nullable=True)
	severity = db.Column(db.Integer, nullable=False, default=1, index=True)
	status = db.Column(
		db.Enum(ReportStatus, name="report_status", native_enum=False, length=32, create_constraint=True, validate_strings=True),
		nullable=False,
		default=ReportStatus.OPEN,
		index=True,
	)
	upvotes = db.Column(db.Integer, nullable=False, default=0)
	is_anonymous = db.Column(db.Boolean, nullable=False, default=False)
	is_duplicate = db.Column(db.Boolean, nullable=False, default=False)
	duplicate_of_id = db.Column(db.String(36), db.ForeignKey("reports.id"), nullable=True, index=True)
	duplicate_count = db.Column(db.Integer, nullable=False, default=0)
	is_spam = db.Column(db.Boolean, nullable=False, default=False, index=True)
	is_sensitive = db.Column(db.Boolean, nullable=False, default=False, index=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
	updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False, index=True)
	completed_at = db.Column(db.DateTime, nullable=True)
	closed_at = db.Column(db.DateTime, nullable=True)
	version = db.Column(db.Integer, nullable=False, default=1)

	__table_args__ = (
		db.CheckConstraint("severity BETWEEN 1 AND 5", name="ck_report_severity_range"),
		db.CheckConstraint(
			"duplicate_of_id IS NULL OR duplicate_of_id <> id",
			name="ck_report_duplicate_reference",
		),
		db.Index("ix_reports_ward_status", "ward_id", "status"),
	)
	__mapper_args__ = {"version_id_col": version}

	reporter = db.relationship("User", back_populates="reports")
	ward = db.relationship("Ward", back_populates="reports")
	department = db.relationship("Department")
	duplicate_of = db.relationship("Report", remote_side=[id])
	history = db.relationship(
		"ReportHistory",
		back_populates="report",
		order_by="ReportHistory.id",
		cascade="all, delete-orphan",
	)
	reactions = db.relationship("ReportReaction", back_populates="report", cascade="all, delete-orphan", lazy="dynamic")
	subscriptions = db.relationship("ReportSubscription", back_populates="report", cascade="all, delete-orphan", lazy="dynamic")
	bids = db.relationship("Bid", back_populates="report", cascade="all, delete-orphan", lazy="dynamic")
	assignments = db.relationship("Assignment", back_populates="report", cascade="all, delete-orphan", lazy="dynamic")
	moderator_actions = db.relationship("ModeratorAction", back_populates="report", cascade="all, delete-orphan", lazy="dynamic")

	@property
	def immutable_fields(self) -> set[str]:
		return {"reporter_id", "ward_id", "created_at"}

	@property
	def is_terminal(self) -> bool:
		return self.status in TERMINAL_STATUSES

	@property
	def is_citizen_editable(self) -> bool:
		return self.status == ReportStatus.OPEN

	@property
	def subscriber_count(self) -> int:
		return self.subscriptions.count()

	@property
	def active_assignment(self) -> "Assignment | None":
		return self.assignments.filter(Assignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES)).first()

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"title": self.title,
			"description": self.description,
			"location": {"latitude": self.latitude, "longitude": self.longitude, "address": self.address},
			"severity": self.severity,
			"status": self.status.value if self.status else None,
			"upvotes": self.upvotes,
			"is_anonymous": self.is_anonymous,
			"reporter_id": None if self.is_anonymous else self.reporter_id,
			"ward_id": self.ward_id,
			"department_id": self.department_id,
			"is_duplicate": self.is_duplicate,
			"duplicate_of_id": self.duplicate_of_id,
			"duplicate_count": self.duplicate_count,
			"is_spam": self.is_spam,
			"is_sensitive": self.is_sensitive,
			"created_at": self.created_at.isoformat() if self.created_at else None,
			"updated_at": self.updated_at.isoformat() if self.updated_at else None,
			"completed_at": self.completed_at.isoformat() if self.completed_at else None,
			"closed_at": self.closed_at.isoformat() if self.closed_at else None,
		}


class ReportHistory(db.Model):
	__tablename__ = "report_history"

	id = db.Column(db.Integer, primary_key=True)
	report_id = db.Column(db.String(36), db.ForeignKey("reports.id"), nullable=False, index=True)
	actor_id = db.Column(db.String(36), nullable=False, default=SYSTEM_ACTOR_ID, index=True)
	actor_name = db.Column(db.String(150), nullable=True)
	action = db.Column(db.String(50), nullable=False, index=True)
	old_status = db.Column(db.String(32), nullable=True)
	new_status = db.Column(db.String(32), nullable=True)
	description = db.Column(db.String(500), nullable=False)
	justification = db.Column(db.Text, nullable=True)
	extra_metadata = db.Column("metadata", db.JSON, nullable=True)
	is_system_generated = db.Column(db.Boolean, nullable=False, default=False)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint(
			"old_status IS NULL OR " + _in_clause("old_status", REPORT_STATUSES),
			name="ck_history_old_status",
		),
		db.CheckConstraint(
			"new_status IS NULL OR " + _in_clause("new_status", REPORT_STATUSES),
			name="ck_history_new_status",
		),
		db.Index("ix_history_report_created", "report_id", "created_at"),
	)

	report = db.relationship("Report", back_populates="history")

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"report_id": self.report_id,
			"actor_id": self.actor_id,
			"actor_name": self.actor_name,
			"action": self.action,
			"old_status": self.old_status,
			"new_status": self.new_status,
			"description": self.description,
			"justification": self.justification,
			"metadata": self.extra_metadata or {},
			"is_system_generated": self.is_system_generated,
			"created_at": self.created_at.isoformat() if self.created_at else None,
		}


class AuditLog(db.Model):
	__tablename__ = "audit_logs"

	id = db.Column(db.Integer, primary_key=True)
	actor_id = db.Column(db.String(36), nullable=False, index=True)
	actor_role = db.Column(db.String(20), nullable=True)
	entity_type = db.Column(db.String(20), nullable=False, index=True)
	entity_id = db.Column(db.String(64), nullable=False, index=True)
	action_type = db.Column(db.String(50), nullable=False, index=True)
	justification = db.Column(db.Text, nullable=True)
	old_value = db.Column(db.JSON, nullable=True)
	new_value = db.Column(db.JSON, nullable=True)
	ip_address = db.Column(db.String(64), nullable=True)
	user_agent = db.Column(db.String(255), nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint(_in_clause("entity_type", AUDIT_ENTITY_TYPES), name="ck_audit_entity_type"),
		db.Index("ix_audit_entity", "entity_type", "entity_id", "created_at"),
	)

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"actor_id": self.actor_id,
			"actor_role": self.actor_role,
			"entity_type": self.entity_type,
			"entity_id": self.entity_id,
			"action_type": self.action_type,
			"justification": self.justification,
			"old_value": self.old_value,
			"new_value": self.new_value,
			"ip_address": self.ip_address,
			"user_agent": self.user_agent,
			"created_at": self.created_at.isoformat() if self.created_at else None,
		}


class ReportReaction(db.Model):
	__tablename__ = "report_reactions"

	id = db.Column(db.Integer, primary_key=True)
	report_id = db.Column(db.String(36), db.ForeignKey("reports.id"), nullable=False, index=True)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	reaction_type = db.Column(db.String(20), nullable=False, default="UPVOTE")
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

	__table_args__ = (
		db.UniqueConstraint("report_id", "user_id", "reaction_type", name="uq_reaction_report_user_type"),
		db.CheckConstraint(_in_clause("reaction_type", REACTION_TYPES), name="ck_reaction_type"),
	)

	report = db.relationship("Report", back_populates="reactions")


class ReportSubscription(db.Model):
	__tablename__ = "report_subscriptions"

	id = db.Column(db.Integer, primary_key=True)
	report_id = db.Column(db.String(36), db.ForeignKey("reports.id"), nullable=False, index=True)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

	__table_args__ = (db.UniqueConstraint("report_id", "user_id", name="uq_subscription_report_user"),)

	report = db.relationship("Report", back_populates="subscriptions")


class Bid(db.Model):
	__tablename__ = "bids"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	report_id = db.Column(db.String(36), db.ForeignKey("reports.id"), nullable=False, index=True)
	contractor_id = db.Column(db.String(36), db.ForeignKey("contractors.id"), nullable=False, index=True)
	proposed_cost = db.Column(db.Float, nullable=False)
	estimated_days = db.Column(db.Integer, nullable=False)
	is_preferred = db.Column(db.Boolean, nullable=False, default=False)
	notes = db.Column(db.String(1000), nullable=True)
	status = db.Column(db.String(20), nullable=False, default="PENDING", index=True)
	accepted_at = db.Column(db.DateTime, nullable=True)
	accepted_by = db.Column(db.String(36), nullable=True)
	rejected_at = db.Column(db.DateTime, nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint(_in_clause("status", BID_STATUSES), name="ck_bid_status"),
		db.CheckConstraint("proposed_cost >= 0", name="ck_bid_cost_positive"),
		db.CheckConstraint("estimated_days >= 1", name="ck_bid_days_positive"),
		db.Index("ix_bids_report_status", "report_id", "status"),
	)

	report = db.relationship("Report", back_populates="bids")
	contractor = db.relationship("Contractor", back_populates="bids")

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"report_id": self.report_id,
			"contractor_id": self.contractor_id,
			"contractor_name": self.contractor.business_name if self.contractor else None,
			"proposed_cost": self.proposed_cost,
			"estimated_days": self.estimated_days,
			"is_preferred": self.is_preferred,
			"notes": self.notes,
			"status": self.status,
			"accepted_at": self.accepted_at.isoformat() if self.accepted_at else None,
			"accepted_by": self.accepted_by,
			"rejected_at": self.rejected_at.isoformat() if self.rejected_at else None,
			"created_at": self.created_at.isoformat() if self.created_at else None,
		}


class Assignment(db.Model):
	__tablename__ = "assignments"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	report_id = db.Column(db.String(36), db.ForeignKey("reports.id"), nullable=False, index=True)
	contractor_id = db.Column(db.String(36), db.ForeignKey("contractors.id"), nullable=True, index=True)
	department_id = db.Column(db.String(36), db.ForeignKey("departments.id"), nullable=True, index=True)
	assigned_by_id = db.Column(db.String(36), nullable=False)
	bid_id = db.Column(db.String(36), db.ForeignKey("bids.id"), nullable=True, unique=True)
	agreed_cost = db.Column(db.Float, nullable=True)
	deadline_at = db.Column(db.DateTime, nullable=True)
	status = db.Column(db.String(20), nullable=False, default="ASSIGNED", index=True)
	started_at = db.Column(db.DateTime, nullable=True)
	completed_at = db.Column(db.DateTime, nullable=True)
	cancelled_at = db.Column(db.DateTime, nullable=True)
	cancel_reason = db.Column(db.String(500), nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint(_in_clause("status", ASSIGNMENT_STATUSES), name="ck_assignment_status"),
		db.CheckConstraint(
			"contractor_id IS NOT NULL OR department_id IS NOT NULL",
			name="ck_assignment_assignee",
		),
		db.Index(
			"uq_assignment_active_report",
			"report_id",
			unique=True,
			sqlite_where=db.text(_in_clause("status", ACTIVE_ASSIGNMENT_STATUSES)),
			postgresql_where=db.text(_in_clause("status", ACTIVE_ASSIGNMENT_STATUSES)),
		),
	)

	report = db.relationship("Report", back_populates="assignments")
	contractor = db.relationship("Contractor", back_populates="assignments")
	department = db.relationship("Department")
	bid = db.relationship("Bid")
	proofs = db.relationship(
		"CompletionProof",
		back_populates="assignment",
		order_by="CompletionProof.created_at",
		cascade="all, delete-orphan",
	)

	@property
	def is_active(self) -> bool:
		return self.status in ACTIVE_ASSIGNMENT_STATUSES

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"report_id": self.report_id,
			"contractor_id": self.contractor_id,
			"department_id": self.department_id,
			"assigned_by_id": self.assigned_by_id,
			"bid_id": self.bid_id,
			"agreed_cost": self.agreed_cost,
			"deadline_at": self.deadline_at.isoformat() if self.deadline_at else None,
			"status": self.status,
			"started_at": self.started_at.isoformat() if self.started_at else None,
			"completed_at": self.completed_at.isoformat() if self.completed_at else None,
			"cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
			"cancel_reason": self.cancel_reason,
		}


class CompletionProof(db.Model):
	__tablename__ = "completion_proofs"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	assignment_id = db.Column(db.String(36), db.ForeignKey("assignments.id"), nullable=False, index=True)
	notes = db.Column(db.Text, nullable=True)
	media_urls = db.Column(db.JSON, nullable=False, default=list)
	status = db.Column(db.String(20), nullable=False, default="PENDING", index=True)
	reviewed_by = db.Column(db.String(36), nullable=True)
	reviewed_at = db.Column(db.DateTime, nullable=True)
	review_notes = db.Column(db.Text, nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (db.CheckConstraint(_in_clause("status", PROOF_STATUSES), name="ck_proof_status"),)

	assignment = db.relationship("Assignment", back_populates="proofs")

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"assignment_id": self.assignment_id,
			"notes": self.notes,
			"media_urls": self.media_urls or [],
			"status": self.status,
			"reviewed_by": self.reviewed_by,
			"reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
			"review_notes": self.review_notes,
			"created_at": self.created_at.isoformat() if self.created_at else None,
		}


class ModeratorAction(db.Model):
	__tablename__ = "moderator_actions"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	moderator_id = db.Column(db.String(36), nullable=False, index=True)
	report_id = db.Column(db.String(36), db.ForeignKey("reports.id"), nullable=False, index=True)
	action = db.Column(db.String(30), nullable=False, index=True)
	justification = db.Column(db.Text, nullable=False)
	old_value = db.Column(db.JSON, nullable=True)
	new_value = db.Column(db.JSON, nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (db.CheckConstraint(_in_clause("action", MODERATION_ACTIONS), name="ck_moderator_action"),)

	report = db.relationship("Report", back_populates="moderator_actions")

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"moderator_id": self.moderator_id,
			"report_id": self.report_id,
			"action": self.action,
			"justification": self.justification,
			"old_value": self.old_value,
			"new_value": self.new_value,
			"created_at": self.created_at.isoformat() if self.created_at else None,
		}
