"""Core constants: replica store naming and shared literal values."""

# Service name meaning "every entity of the model is in scope"
DEFAULT_SERVICE = "db"

# SQLite in-memory database marker
IN_MEMORY = ":memory:"

# Pseudo-tenant of the schema-deployed store copied into new tenant stores
TEMPLATE_TENANT = "template"

# Suffix of language-variant entities (e.g. "shop.Books.texts")
TEXTS_SUFFIX = ".texts"

# Column joining a texts entity to the request locale
LOCALE_COLUMN = "locale"

# dbstat reports one page for an empty table; at or below this a relation counts as empty
EMPTY_RELATION_BYTES = 4096

# Chunk size for template file copies
FILE_COPY_CHUNK_SIZE = 64 * 1024
