DEFAULT_CATEGORY = "general"

# Checked top to bottom; several substrings overlap ("node" vs "nodejs_read",
# "db" vs "read_db_log"), so the first matching rule decides.
CATEGORY_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("k8s", "kubernetes", "pod", "deploy", "service", "node", "namespace"), "kubernetes"),
    (("log", "metric"), "monitoring"),
    (("file", "read", "write"), "file operations"),
    (("search", "query"), "search/query"),
    (("web", "http"), "network request"),
    (("database", "db"), "database"),
)


def classify_tool(name: str) -> str:
    lowered = (name or "").lower()
    for substrings, category in CATEGORY_RULES:
        if any(substring in lowered for substring in substrings):
            return category
    return DEFAULT_CATEGORY
