STATE_DIR_NAME = ".agent_workflow"
CONFIG_FILE = "config.yaml"
STORE_FILE = "workflow_items.yaml"
STORE_LOCK_FILE = "workflow_items.lock"
TRACKER_FILE = "tracker.yaml"
TRACKER_LOCK_FILE = "tracker.lock"
LOGS_DIR = "logs"

LOCK_FILE_PREFIX = "agent-dir-"
DEFAULT_STALE_TIMEOUT_MINUTES = 20
DEFAULT_UNDO_WINDOW_SECONDS = 5 * 60
DEFAULT_HANDLER_TIMEOUT_SECONDS = 25
DEFAULT_CALLBACK_WORKERS = 4
DEFAULT_AGENT_TIMEOUT_SECONDS = 1800
DEFAULT_BATCH_LIMIT = 50
DEFAULT_BRANCH = "main"
STORE_LOCK_TIMEOUT = 30  # seconds

CALLBACK_DATA_MAX_BYTES = 64

STATUS_BACKLOG = "Backlog"
STATUS_PRODUCT_DEVELOPMENT = "Product Development"
STATUS_PRODUCT_DESIGN = "Product Design"
STATUS_TECH_DESIGN = "Technical Design"
STATUS_IMPLEMENTATION = "Implementation"
STATUS_PR_REVIEW = "PR Review"
STATUS_DONE = "Done"

STATUS_ORDER = (
    STATUS_BACKLOG,
    STATUS_PRODUCT_DEVELOPMENT,
    STATUS_PRODUCT_DESIGN,
    STATUS_TECH_DESIGN,
    STATUS_IMPLEMENTATION,
    STATUS_PR_REVIEW,
    STATUS_DONE,
)

DESIGN_STATUSES = (
    STATUS_PRODUCT_DEVELOPMENT,
    STATUS_PRODUCT_DESIGN,
    STATUS_TECH_DESIGN,
)

REVIEW_WAITING_FOR_DECISION = "Waiting for Decision"
REVIEW_WAITING_FOR_REVIEW = "Waiting for Review"
REVIEW_WAITING_FOR_CLARIFICATION = "Waiting for Clarification"
REVIEW_APPROVED = "Approved"
REVIEW_REQUEST_CHANGES = "Request Changes"
REVIEW_REJECTED = "Rejected"
REVIEW_CLARIFICATION_RECEIVED = "Clarification Received"

REVIEW_STATUSES = (
    REVIEW_WAITING_FOR_DECISION,
    REVIEW_WAITING_FOR_REVIEW,
    REVIEW_WAITING_FOR_CLARIFICATION,
    REVIEW_APPROVED,
    REVIEW_REQUEST_CHANGES,
    REVIEW_REJECTED,
    REVIEW_CLARIFICATION_RECEIVED,
)

# Callback payloads are capped at 64 bytes, so statuses travel as short codes.
STATUS_CODES = {
    STATUS_BACKLOG: "bl",
    STATUS_PRODUCT_DEVELOPMENT: "pdev",
    STATUS_PRODUCT_DESIGN: "pdes",
    STATUS_TECH_DESIGN: "tdes",
    STATUS_IMPLEMENTATION: "impl",
    STATUS_PR_REVIEW: "prrev",
    STATUS_DONE: "done",
}
CODE_TO_STATUS = {code: status for status, code in STATUS_CODES.items()}

ITEM_TYPE_FEATURE = "feature"
ITEM_TYPE_BUG = "bug"

FEATURE_ROUTING_STATUS_MAP = {
    "product-dev": STATUS_PRODUCT_DEVELOPMENT,
    "product-design": STATUS_PRODUCT_DESIGN,
    "tech-design": STATUS_TECH_DESIGN,
    "implementation": STATUS_IMPLEMENTATION,
    "backlog": STATUS_BACKLOG,
}
BUG_ROUTING_STATUS_MAP = {
    key: value for key, value in FEATURE_ROUTING_STATUS_MAP.items() if key != "product-dev"
}

PHASE_COMMENT_MARKER = "<!-- AGENT_PHASES_V1 -->"
ARTIFACT_COMMENT_MARKER = "<!-- AGENT_ARTIFACT_V1 -->"
PHASE_FIELD_PATTERN = r"^(\d+)/(\d+)$"

# Batch agents, in the order `--all` runs them.
AGENT_AUTO_ADVANCE = "auto-advance"
AGENT_PRODUCT_DEV = "product-dev"
AGENT_PRODUCT_DESIGN = "product-design"
AGENT_TECH_DESIGN = "tech-design"
AGENT_IMPLEMENT = "implement"
AGENT_PR_REVIEW = "pr-review"

ALL_AGENTS_ORDER = (
    AGENT_AUTO_ADVANCE,
    AGENT_PRODUCT_DEV,
    AGENT_PRODUCT_DESIGN,
    AGENT_TECH_DESIGN,
    AGENT_IMPLEMENT,
    AGENT_PR_REVIEW,
)

AGENT_STATUS = {
    AGENT_PRODUCT_DEV: STATUS_PRODUCT_DEVELOPMENT,
    AGENT_PRODUCT_DESIGN: STATUS_PRODUCT_DESIGN,
    AGENT_TECH_DESIGN: STATUS_TECH_DESIGN,
    AGENT_IMPLEMENT: STATUS_IMPLEMENTATION,
    AGENT_PR_REVIEW: STATUS_PR_REVIEW,
}

CREDENTIAL_ENV_VARS = {
    "tracker_token": "AGENT_WORKFLOW_TRACKER_TOKEN",
    "chat_token": "AGENT_WORKFLOW_CHAT_TOKEN",
    "chat_id": "AGENT_WORKFLOW_CHAT_ID",
}

ROUTING_DESTINATION_LABELS = {
    "product-dev": "Product Dev",
    "product-design": "Product Design",
    "tech-design": "Tech Design",
    "implementation": "Implementation",
    "backlog": "Backlog",
}

# Design documents reviewed as pull requests, keyed by the type carried in callbacks.
DESIGN_TYPE_STATUS = {
    "product": STATUS_PRODUCT_DEVELOPMENT,
    "ux": STATUS_PRODUCT_DESIGN,
    "tech": STATUS_TECH_DESIGN,
}
DESIGN_TYPE_LABELS = {
    "product": "Product Development",
    "ux": "Product Design",
    "tech": "Technical Design",
}
