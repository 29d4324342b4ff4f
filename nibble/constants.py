APP_NAME = "Nibble"
APP_VERSION = "1.0.0"
DEFAULT_DATA_FILE = "data/installations.json"

MARKER_KEYWORD = "NIBBLE"
MARKER_SYNTAXES = ("//", "#")
BRANCH_PREFIX = "nibble/daily-improvement"
PR_TITLE_PREFIX = "Daily Nibble"
TRIGGER_BRANCHES = (
	"refs/heads/main",
	"refs/heads/master",
)

DEFAULT_CONFIDENCE_THRESHOLD = 0.7
DEFAULT_MAX_CANDIDATES = 5
DEFAULT_CONTEXT_LINES = 10
DEFAULT_REPO_DELAY_S = 5.0

DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_OPENAI_TIMEOUT_S = 30.0
DEFAULT_GITHUB_API_URL = "https://api.github.com"

DEFAULT_RATE_MAX_REQUESTS = 10
DEFAULT_RATE_WINDOW_S = 60.0
DEFAULT_RATE_MAX_VIOLATIONS = 3
DEFAULT_RATE_BLOCK_S = 300.0

PROTECTED_PATH_PREFIXES = (
	"/trigger",
	"/debug",
)

DEFAULT_ALLOWED_HOSTS = [
	"nibble.practical-engineer.ai",
	"127.0.0.1",
	"localhost",
	"testserver",
]

BLOCKED_PATH_PATTERNS = [
	r"/\.git/",
	r"/\.env$",
	r"/\.aws/",
	r"/\.ssh/",
	r"/wp-admin/",
	r"/wp-login",
	r"/admin/",
	r"/phpmyadmin/",
	r"\.php$",
	r"\.sql$",
	r"\.bak$",
	r"\.backup$",
	r"\.old$",
	r"\.config$",
	r"\.log$",
	r"/sitemap\.xml$",
	r"/apple-touch-icon",
	r"/\.well-known/",
	r"/aws/",
	r"/azure/",
	r"/gcp/",
	r"/docker/",
	r"/kubernetes/",
	r"/package\.json$",
	r"/composer\.json$",
	r"/yarn\.lock$",
	r"/package-lock\.json$",
]

BLOCKED_AGENT_PATTERNS = [
	r"^bot\b",
	r"^crawler\b",
	r"^spider\b",
	r"scanner",
	r"^curl/",
	r"^wget/",
	r"^python-requests/",
	r"^go-http-client/",
	r"nikto",
	r"sqlmap",
	r"nmap",
	r"masscan",
	r"zaproxy",
	r"burpsuite",
	r"nuclei",
	r"acunetix",
	r"nessus",
	r"openvas",
]

LANGUAGE_BY_EXTENSION = {
	"js": "javascript",
	"ts": "typescript",
	"py": "python",
	"java": "java",
	"cpp": "cpp",
	"c": "c",
	"rb": "ruby",
	"php": "php",
	"go": "go",
	"rs": "rust",
	"cs": "csharp",
	"html": "html",
	"css": "css",
	"md": "markdown",
}
