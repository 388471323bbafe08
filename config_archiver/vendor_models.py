"""
Built-in Vendor Models
======================

Registers the stock device profiles into a device table.

Features:
- Cisco IOS, IOS XR, APIC and NGA
- Juniper JunOS, Huawei VRP, Datacom DmSwitch, MikroTik, FortiOS
- Linux shell, plain HTTP and local program ("run") profiles
"""

import logging
from typing import Callable, List

from .error_handling import ModelExists
from .models import DevAttributes, Model

# Configure logging
logger = logging.getLogger(__name__)


def cisco_ios() -> Model:
    a = DevAttributes(
        need_login_chat=True,
        need_enabled_mode=True,
        need_paging_off=True,
        enable_command="enable",
        username_prompt_pattern=r"Username:\s*$",
        password_prompt_pattern=r"Password:\s*$",
        enable_password_prompt_pattern=r"Password:\s*$",
        disabled_prompt_pattern=r"\S+>\s*$",
        enabled_prompt_pattern=r"\S+#\s*$",
        command_list=["show ver", "show run"],
        disable_pager_command="term len 0",
        read_timeout=10.0,
        match_timeout=20.0,
        send_timeout=5.0,
        command_read_timeout=20.0,
        command_match_timeout=30.0,
        quote_sent_commands_format="!![%q]",
    )
    return Model("cisco-ios", a)


def cisco_iosxr() -> Model:
    a = cisco_ios().new_attr()
    a.command_list = ["show ver br", "show run"]
    a.quote_sent_commands_format = "!![%s]"
    a.line_filter = "iosxr"
    return Model("cisco-iosxr", a)


def cisco_apic() -> Model:
    prompt = r"\S+#\s*$"
    a = DevAttributes(
        disabled_prompt_pattern=prompt,
        enabled_prompt_pattern=prompt,
        command_list=["show ver", "conf", "terminal length 0", "show running-config"],
        command_read_timeout=20.0,
        command_match_timeout=60.0,
        quote_sent_commands_format="!![%s]",
    )
    return Model("cisco-apic", a)


def cisco_nga() -> Model:
    prompt = r"\S+#\s*$"
    a = DevAttributes(
        disabled_prompt_pattern=prompt,
        enabled_prompt_pattern=prompt,
        command_list=["terminal length 0", "show ver", "show conf"],
        command_read_timeout=15.0,
        command_match_timeout=25.0,
        quote_sent_commands_format="!![%s]",
    )
    return Model("cisco-nga", a)


def junos() -> Model:
    a = DevAttributes(
        need_login_chat=True,
        need_paging_off=True,
        username_prompt_pattern=r"login:\s*$",
        password_prompt_pattern=r"Password:\s*$",
        disabled_prompt_pattern=r"\S+>\s*$",
        enabled_prompt_pattern=r"\S+>\s*$",
        command_list=["show ver", "show conf | disp set"],
        disable_pager_command="set cli screen-length 0",
        quote_sent_commands_format="##[%s]",
        s3_content_type="detect",
    )
    return Model("junos", a)


def huawei_vrp() -> Model:
    prompt = r"<[^<>]+>$"
    a = DevAttributes(
        need_login_chat=True,
        username_prompt_pattern=r"Username:$",
        password_prompt_pattern=r"Password:$",
        disabled_prompt_pattern=prompt,
        enabled_prompt_pattern=prompt,
        command_list=["screen-length 0 temporary", "disp ver", "disp curr"],
        command_read_timeout=15.0,
        command_match_timeout=25.0,
        quote_sent_commands_format="##[%s]",
    )
    return Model("huawei-vrp", a)


def dmswitch() -> Model:
    prompt = r"[^#\s]+#$"
    a = DevAttributes(
        need_login_chat=True,
        username_prompt_pattern=r"login:\s*$",
        password_prompt_pattern=r"Password:\s*$",
        disabled_prompt_pattern=prompt,
        enabled_prompt_pattern=prompt,
        command_list=[
            "no terminal paging",
            "show system",
            "show firmware",
            "show running-config",
            "terminal paging",
        ],
        command_read_timeout=15.0,
        command_match_timeout=25.0,
        quote_sent_commands_format="!![%s]",
    )
    return Model("dmswitch", a)


def mikrotik() -> Model:
    prompt = r"\[[^\[\]]+\]\s*>\s*$"
    a = DevAttributes(
        need_login_chat=True,
        username_prompt_pattern=r"Login:\s*$",
        password_prompt_pattern=r"Password:\s*$",
        post_login_prompt_pattern=r'Please press "Enter" to continue!',
        post_login_prompt_response="\r\n",
        disabled_prompt_pattern=prompt,
        enabled_prompt_pattern=prompt,
        command_list=["/system resource print\r", "/export\r", "/export verbose\r"],
        quote_sent_commands_format="##[%s]",
        username_append="+cte",
    )
    return Model("mikrotik", a)


def fortios() -> Model:
    prompt = r"\S+\s#\s$"  # "hostname # "
    a = DevAttributes(
        need_login_chat=True,
        username_prompt_pattern=r"login:\s*$",
        password_prompt_pattern=r"Password:\s*$",
        disabled_prompt_pattern=prompt,
        enabled_prompt_pattern=prompt,
        command_list=[
            "config system global",
            "config system console",
            "set output standard",
            "end",
            "get system status",
            "show",
        ],
        command_match_timeout=60.0,
        quote_sent_commands_format="##[%s]",
    )
    return Model("fortios", a)


def linux() -> Model:
    a = DevAttributes(
        need_login_chat=True,
        username_prompt_pattern=r"Username:\s*$",
        password_prompt_pattern=r"Password:\s*$",
        disabled_prompt_pattern=r"\$\s*$",
        enabled_prompt_pattern=r"\$\s*$",
        command_list=["", "/bin/uname -a", "/usr/bin/uptime", "/bin/ls"],
        read_timeout=5.0,
        match_timeout=10.0,
        command_read_timeout=10.0,
        command_match_timeout=10.0,
    )
    return Model("linux", a)


def http() -> Model:
    a = DevAttributes(
        command_list=["GET / HTTP/1.0\r\n\r\n"],
        enabled_prompt_pattern="",  # read until EOF
        read_timeout=5.0,
        match_timeout=10.0,
        command_read_timeout=5.0,
        command_match_timeout=10.0,
        suppress_auto_lf=True,
        quote_sent_commands_format="[%s]",
    )
    return Model("http", a)


def run() -> Model:
    a = DevAttributes(
        run_prog=["/bin/sh", "-c", "env | grep ^ARCHIVER_"],
        run_timeout=60.0,
        enabled_prompt_pattern="",  # read until EOF
        command_list=[""],  # send nothing, wait for EOF
        read_timeout=5.0,
        match_timeout=10.0,
        command_read_timeout=10.0,
        command_match_timeout=10.0,
    )
    return Model("run", a)


BUILTIN_MODELS: List[Callable[[], Model]] = [
    cisco_ios,
    cisco_iosxr,
    cisco_apic,
    cisco_nga,
    junos,
    huawei_vrp,
    dmswitch,
    mikrotik,
    fortios,
    linux,
    http,
    run,
]


def register_models(table) -> int:
    """Register every built-in model. Returns how many were added."""
    count = 0
    for factory in BUILTIN_MODELS:
        model = factory()
        try:
            table.set_model(model)
            count += 1
        except ModelExists as e:
            logger.warning(f"register_models: {e}")
    logger.info(f"register_models: {count} models registered")
    return count
