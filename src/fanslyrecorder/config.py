"""
Configuration module for the Fansly live recorder.
Loads settings from a YAML file and provides typed, read-only configuration.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml


DEFAULT_FILENAME_TEMPLATE = "{model_username}_{date}_{streamId}_v{streamVersion}"


@dataclass(frozen=True)
class AccountConfig:
    """Credentials used for the API and the chat websocket."""
    auth_token: str
    user_agent: str


@dataclass(frozen=True)
class OptionsConfig:
    """General download options."""
    save_location: str = "./downloads"


@dataclass(frozen=True)
class LiveSettingsConfig:
    """Livestream monitoring and recording settings."""
    save_location: str = ""       # Overrides options.save_location for lives
    check_interval: int = 120     # seconds between liveness checks
    rescan_interval: int = 120    # seconds between watch-list re-reads
    filename_template: str = DEFAULT_FILENAME_TEMPLATE
    date_format: str = "%Y%m%d_%H%M%S"
    vods_file_extension: str = ".ts"
    record_chat: bool = True
    ffmpeg_convert: bool = True
    ffmpeg_recording_options: str = ""    # empty = program defaults
    ffmpeg_conversion_options: str = ""   # empty = "-c copy"
    generate_contact_sheet: bool = True
    use_mt_for_contact_sheet: bool = False
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    mt_path: str = "mt"


@dataclass(frozen=True)
class ChatConfig:
    """Chat capture timings."""
    reconnect_wait: float = 5.0
    ping_interval: float = 30.0
    save_interval: float = 30.0
    flush_threshold: int = 100
    auth_timeout: float = 10.0
    stop_timeout: float = 5.0
    dedupe_messages: bool = False


@dataclass(frozen=True)
class NotificationsConfig:
    """Live start/end alert settings."""
    enabled: bool = False
    notify_on_live_start: bool = True
    notify_on_live_end: bool = True
    send_contact_sheet_on_live_end: bool = False
    system_notify: bool = True
    discord_webhook: str = ""
    discord_mention_id: str = ""  # user id, or "role:<id>"
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""


@dataclass(frozen=True)
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: str = "./logs/recorder.log"
    max_size_mb: int = 10
    backup_count: int = 5


@dataclass(frozen=True)
class StateConfig:
    """Persistence locations."""
    watchlist_file: str = "./data/monitoring_state.json"
    locks_dir: str = "./data/active_recordings"
    media_db: str = "./data/media.db"
    shutdown_grace: float = 5.0


@dataclass(frozen=True)
class Config:
    """Main configuration container. Instances are never mutated."""
    account: AccountConfig
    options: OptionsConfig = field(default_factory=OptionsConfig)
    live_settings: LiveSettingsConfig = field(default_factory=LiveSettingsConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    state: StateConfig = field(default_factory=StateConfig)


def as_bool(value: Any, default: bool) -> bool:
    """Parse bool from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("1", "true", "yes", "y", "on"):
            return True
        if text in ("0", "false", "no", "n", "off"):
            return False
    return default


def as_float(value: Any, default: float) -> float:
    """Parse float from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", "."))
        except ValueError:
            return default
    return default


def as_int(value: Any, default: int) -> int:
    """Parse int from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return default
        try:
            return int(float(text.replace(",", ".")))
        except ValueError:
            return default
    return default


def as_str(value: Any, default: str) -> str:
    if value is None:
        return default
    return str(value)


def parse_config(data: Mapping[str, Any]) -> Config:
    """
    Build a Config from an already-decoded mapping.

    Raises:
        ValueError: If required fields are missing.
    """
    if not data:
        raise ValueError("Configuration is empty")

    account_data = data.get('account') or {}
    for field_name in ('auth_token', 'user_agent'):
        if not account_data.get(field_name):
            raise ValueError(f"Missing required field: account.{field_name}")

    account = AccountConfig(
        auth_token=str(account_data['auth_token']),
        user_agent=str(account_data['user_agent']),
    )

    options_data = data.get('options') or {}
    options = OptionsConfig(
        save_location=as_str(options_data.get('save_location'), "./downloads"),
    )

    live_data = data.get('live_settings') or {}
    defaults = LiveSettingsConfig()
    live_settings = LiveSettingsConfig(
        save_location=as_str(live_data.get('save_location'), ""),
        check_interval=max(1, as_int(live_data.get('check_interval'), defaults.check_interval)),
        rescan_interval=max(1, as_int(live_data.get('rescan_interval'), defaults.rescan_interval)),
        filename_template=as_str(live_data.get('filename_template'), "") or defaults.filename_template,
        date_format=as_str(live_data.get('date_format'), "") or defaults.date_format,
        vods_file_extension=_normalize_ext(
            as_str(live_data.get('vods_file_extension'), defaults.vods_file_extension)
        ),
        record_chat=as_bool(live_data.get('record_chat'), defaults.record_chat),
        ffmpeg_convert=as_bool(live_data.get('ffmpeg_convert'), defaults.ffmpeg_convert),
        ffmpeg_recording_options=as_str(live_data.get('ffmpeg_recording_options'), ""),
        ffmpeg_conversion_options=as_str(live_data.get('ffmpeg_conversion_options'), ""),
        generate_contact_sheet=as_bool(
            live_data.get('generate_contact_sheet'), defaults.generate_contact_sheet
        ),
        use_mt_for_contact_sheet=as_bool(
            live_data.get('use_mt_for_contact_sheet'), defaults.use_mt_for_contact_sheet
        ),
        ffmpeg_path=as_str(live_data.get('ffmpeg_path'), "") or defaults.ffmpeg_path,
        ffprobe_path=as_str(live_data.get('ffprobe_path'), "") or defaults.ffprobe_path,
        mt_path=as_str(live_data.get('mt_path'), "") or defaults.mt_path,
    )

    chat_data = data.get('chat') or {}
    chat_defaults = ChatConfig()
    chat = ChatConfig(
        reconnect_wait=max(0.0, as_float(chat_data.get('reconnect_wait'), chat_defaults.reconnect_wait)),
        ping_interval=max(1.0, as_float(chat_data.get('ping_interval'), chat_defaults.ping_interval)),
        save_interval=max(1.0, as_float(chat_data.get('save_interval'), chat_defaults.save_interval)),
        flush_threshold=max(1, as_int(chat_data.get('flush_threshold'), chat_defaults.flush_threshold)),
        auth_timeout=max(1.0, as_float(chat_data.get('auth_timeout'), chat_defaults.auth_timeout)),
        stop_timeout=max(0.0, as_float(chat_data.get('stop_timeout'), chat_defaults.stop_timeout)),
        dedupe_messages=as_bool(chat_data.get('dedupe_messages'), chat_defaults.dedupe_messages),
    )

    notif_data = data.get('notifications') or {}
    notif_defaults = NotificationsConfig()
    notifications = NotificationsConfig(
        enabled=as_bool(notif_data.get('enabled'), notif_defaults.enabled),
        notify_on_live_start=as_bool(
            notif_data.get('notify_on_live_start'), notif_defaults.notify_on_live_start
        ),
        notify_on_live_end=as_bool(
            notif_data.get('notify_on_live_end'), notif_defaults.notify_on_live_end
        ),
        send_contact_sheet_on_live_end=as_bool(
            notif_data.get('send_contact_sheet_on_live_end'),
            notif_defaults.send_contact_sheet_on_live_end
        ),
        system_notify=as_bool(notif_data.get('system_notify'), notif_defaults.system_notify),
        discord_webhook=as_str(notif_data.get('discord_webhook'), ""),
        discord_mention_id=as_str(notif_data.get('discord_mention_id'), ""),
        telegram_bot_token=as_str(notif_data.get('telegram_bot_token'), ""),
        telegram_chat_id=as_str(notif_data.get('telegram_chat_id'), ""),
    )

    logging_data = data.get('logging') or {}
    logging_config = LoggingConfig(
        level=as_str(logging_data.get('level'), "INFO"),
        file=as_str(logging_data.get('file'), "./logs/recorder.log"),
        max_size_mb=as_int(logging_data.get('max_size_mb'), 10),
        backup_count=as_int(logging_data.get('backup_count'), 5),
    )

    state_data = data.get('state') or {}
    state_defaults = StateConfig()
    state = StateConfig(
        watchlist_file=as_str(state_data.get('watchlist_file'), state_defaults.watchlist_file),
        locks_dir=as_str(state_data.get('locks_dir'), state_defaults.locks_dir),
        media_db=as_str(state_data.get('media_db'), state_defaults.media_db),
        shutdown_grace=max(0.0, as_float(state_data.get('shutdown_grace'), state_defaults.shutdown_grace)),
    )

    return Config(
        account=account,
        options=options,
        live_settings=live_settings,
        chat=chat,
        notifications=notifications,
        logging=logging_config,
        state=state,
    )


def load_config(config_path: str = "config.yaml") -> Config:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file.

    Returns:
        Config object with all settings.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValueError: If required fields are missing.
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n"
            f"Please create a config.yaml file. See config.example.yaml for reference."
        )

    with open(config_path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)

    return parse_config(data or {})


def _normalize_ext(ext: str) -> str:
    ext = ext.strip() or ".ts"
    return ext if ext.startswith('.') else f".{ext}"


class _TemplateValues(dict):
    """Leaves unknown placeholders untouched instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def resolve_live_save_path(config: Config, username: str) -> Path:
    """Directory a creator's livestream recordings are written to."""
    live_location = config.live_settings.save_location
    if live_location:
        if "{model_username}" in live_location:
            return Path(live_location.format_map(_TemplateValues(model_username=username)))
        return Path(live_location) / username.lower()
    return Path(config.options.save_location) / username.lower() / "lives"


def build_vod_filename(config: Config, values: Dict[str, str]) -> str:
    """
    Render the recording filename from the configured template.

    Args:
        config: Configuration snapshot.
        values: model_username, date, streamId and streamVersion.

    Returns:
        Filename including the configured extension.
    """
    name = config.live_settings.filename_template.format_map(_TemplateValues(values))
    for bad in ('/', '\\', ':', '*', '?', '"', '<', '>', '|', '\n', '\r'):
        name = name.replace(bad, '')
    return name.strip() + config.live_settings.vods_file_extension


def create_example_config(path: str = "config.example.yaml") -> None:
    """Create an example configuration file."""
    example = """# Fansly live recorder configuration

account:
  auth_token: YOUR_AUTH_TOKEN   # Copied from the browser's local storage
  user_agent: "Mozilla/5.0 ..." # Same user agent as the browser session

options:
  save_location: ./downloads

live_settings:
  save_location: ""            # Optional, defaults to <save_location>/<creator>/lives
  check_interval: 120          # Seconds between live checks per creator
  rescan_interval: 120         # Seconds between watch-list re-reads
  filename_template: "{model_username}_{date}_{streamId}_v{streamVersion}"
  date_format: "%Y%m%d_%H%M%S"
  vods_file_extension: .ts
  record_chat: true
  ffmpeg_convert: true         # Convert the capture to MP4 afterwards
  ffmpeg_recording_options: "" # Empty = built-in defaults
  ffmpeg_conversion_options: ""
  generate_contact_sheet: true
  use_mt_for_contact_sheet: false

chat:
  reconnect_wait: 5
  ping_interval: 30
  save_interval: 30
  flush_threshold: 100
  dedupe_messages: false       # Drop repeated message ids when merging

notifications:
  enabled: false
  notify_on_live_start: true
  notify_on_live_end: true
  send_contact_sheet_on_live_end: false
  system_notify: true
  discord_webhook: ""
  discord_mention_id: ""       # User id, or role:<id>
  telegram_bot_token: ""
  telegram_chat_id: ""

logging:
  level: INFO
  file: ./logs/recorder.log
  max_size_mb: 10
  backup_count: 5

state:
  watchlist_file: ./data/monitoring_state.json
  locks_dir: ./data/active_recordings
  media_db: ./data/media.db
  shutdown_grace: 5
"""
    with open(path, 'w', encoding='utf-8') as f:
        f.write(example)


def default_config_path() -> str:
    """Config path from FANSLY_RECORDER_CONFIG, falling back to ./config.yaml."""
    return os.environ.get("FANSLY_RECORDER_CONFIG", "config.yaml")
