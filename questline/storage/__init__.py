"""File-based JSON document store.

Data layout:
  data/
    campaigns/
      <id>.json          Campaign (worldModule, character, moduleState, version)
      <id>/messages.json Append-only message log
    prompts/
      global.json        Global prompt document + state reviewer settings
      <world>.json       Per-world prompt overrides (null field = use global)
    knowledge.json       Knowledge-base documents
    config.json          Runtime settings (models, narrator limits, ...)
    usage/
      users/<uid>.json   Cumulative per-user counters
      daily/<date>.json  Global daily aggregate

Writes are atomic per document (temp file + rename). Counter updates and
versioned state writes hold the process-wide store lock, so concurrent
turns from different users never lose increments.
"""

# Re-export all public symbols so `from questline import storage` keeps working.

from .core import (  # noqa: F401
    ConflictError,
    StorageError,
    campaigns_dir,
    data_dir,
    init_storage,
    prompts_dir,
    slugify,
    store_lock,
)

from .campaigns import (  # noqa: F401
    check_campaign_id,
    create_campaign,
    delete_campaign,
    get_campaign,
    list_campaigns,
    save_campaign_state,
    touch_campaign,
)

from .messages import (  # noqa: F401
    append_messages,
    get_messages,
    new_message,
)

from .prompts import (  # noqa: F401
    GLOBAL_DOC,
    get_prompt_document,
    save_prompt_document,
)

from .knowledge import (  # noqa: F401
    add_knowledge_document,
    get_knowledge_documents,
    save_knowledge_documents,
)

from .config import (  # noqa: F401
    CONFIG_DEFAULTS,
    get_config,
    update_config,
)

from .usage import (  # noqa: F401
    get_daily_usage,
    get_user_usage,
    increment_daily_usage,
    increment_user_usage,
    today,
)
