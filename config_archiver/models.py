"""
Device Model Profiles
=====================

A model profile describes how to talk to a family of devices: prompt
patterns, the login/enable/pager sequence, the command list to capture
and the timeouts of every dialog phase. Profiles are registered once at
startup and never mutated; each device receives its own copy of the
attributes.
"""

import copy
import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List

# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class DevAttributes:
    """Per-model (and per-device) dialog attributes. Durations in seconds."""
    need_login_chat: bool = False
    need_enabled_mode: bool = False
    need_paging_off: bool = False
    keep_control_chars: bool = False
    suppress_auto_lf: bool = False
    send_extra_post_password_newline: bool = False
    changes_only: bool = False

    enable_command: str = ""
    disable_pager_command: str = ""
    username_prompt_pattern: str = ""
    password_prompt_pattern: str = ""
    enable_password_prompt_pattern: str = ""
    disabled_prompt_pattern: str = ""
    enabled_prompt_pattern: str = ""
    post_login_prompt_pattern: str = ""
    post_login_prompt_response: str = ""
    quote_sent_commands_format: str = "!![%q]"
    line_filter: str = ""
    s3_content_type: str = ""
    username_append: str = ""

    disable_pager_extra_prompt_count: int = 0
    errlog_hist_size: int = 60

    command_list: List[str] = field(default_factory=list)

    read_timeout: float = 10.0
    match_timeout: float = 20.0
    send_timeout: float = 5.0
    command_read_timeout: float = 20.0
    command_match_timeout: float = 30.0

    run_prog: List[str] = field(default_factory=list)
    run_timeout: float = 60.0

    def copy(self) -> "DevAttributes":
        """Deep copy, so list attributes are never shared."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: copy.deepcopy(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DevAttributes":
        """Build attributes from a mapping; unknown keys are ignored."""
        known = {f.name: f for f in fields(cls)}
        kwargs = {}
        for key, value in (data or {}).items():
            if key not in known:
                logger.warning(f"DevAttributes: ignoring unknown attribute '{key}'")
                continue
            if key in ("command_list", "run_prog"):
                value = [str(v) for v in (value or [])]
            kwargs[key] = value
        return cls(**kwargs)


@dataclass(frozen=True)
class Model:
    """Named device profile."""
    name: str
    default_attr: DevAttributes

    def new_attr(self) -> DevAttributes:
        """Attributes for a new device of this model."""
        return self.default_attr.copy()
