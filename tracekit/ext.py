"""Tag names and values understood by the tracing backend."""

# App types categorize a trace. Prefer the SPAN_TYPE_* constants where possible.
APP_TYPE_WEB = "web"
APP_TYPE_DB = "db"
APP_TYPE_CACHE = "cache"
APP_TYPE_RPC = "rpc"

# Span types categorize spans and drive agent-side behaviour such as
# obfuscation and quantization.
SPAN_TYPE_WEB = "web"
SPAN_TYPE_HTTP = "http"
SPAN_TYPE_SQL = "sql"
SPAN_TYPE_CASSANDRA = "cassandra"
SPAN_TYPE_REDIS = "redis"
SPAN_TYPE_MEMCACHED = "memcached"
SPAN_TYPE_MONGODB = "mongodb"
SPAN_TYPE_ELASTICSEARCH = "elasticsearch"
SPAN_TYPE_LEVELDB = "leveldb"
SPAN_TYPE_DNS = "dns"
SPAN_TYPE_MESSAGE_CONSUMER = "queue"
SPAN_TYPE_MESSAGE_PRODUCER = "queue"
SPAN_TYPE_CONSUL = "consul"

# Cassandra tags.
CASSANDRA_QUERY = "cassandra.query"
CASSANDRA_CONSISTENCY_LEVEL = "cassandra.consistency_level"
CASSANDRA_CLUSTER = "cassandra.cluster"
CASSANDRA_ROW_COUNT = "cassandra.row_count"
CASSANDRA_KEYSPACE = "cassandra.keyspace"
CASSANDRA_PAGINATED = "cassandra.paginated"

# Database tags.
DB_APPLICATION = "db.application"
DB_NAME = "db.name"
DB_TYPE = "db.type"
DB_INSTANCE = "db.instance"
DB_USER = "db.user"
DB_STATEMENT = "db.statement"

# Peer tags.
PEER_HOST_IPV4 = "peer.ipv4"
PEER_HOST_IPV6 = "peer.ipv6"
PEER_SERVICE = "peer.service"
PEER_HOSTNAME = "peer.hostname"
PEER_PORT = "peer.port"

# Sampling priorities: hints telling the backend which traces to keep.
PRIORITY_USER_REJECT = -1
PRIORITY_AUTO_REJECT = 0
PRIORITY_AUTO_KEEP = 1
PRIORITY_USER_KEEP = 2

# System metadata.
PID = "system.pid"

# General span tags.
TARGET_HOST = "out.host"
TARGET_PORT = "out.port"
SAMPLING_PRIORITY = "sampling.priority"
SQL_TYPE = "sql"
SQL_QUERY = "sql.query"
HTTP_METHOD = "http.method"
HTTP_CODE = "http.status_code"
HTTP_URL = "http.url"
SPAN_NAME = "span.name"
SPAN_TYPE = "span.type"
SERVICE_NAME = "service.name"
VERSION = "version"
RESOURCE_NAME = "resource.name"
ERROR = "error"
ERROR_MSG = "error.msg"
ERROR_TYPE = "error.type"
ERROR_STACK = "error.stack"
ERROR_DETAILS = "error.details"
ENVIRONMENT = "env"
EVENT_SAMPLE_RATE = "_dd1.sr.eausr"
ANALYTICS_EVENT = "analytics.event"
MANUAL_KEEP = "manual.keep"
MANUAL_DROP = "manual.drop"
RUNTIME_ID = "runtime-id"