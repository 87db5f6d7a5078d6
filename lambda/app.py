import json
import os
import sys
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

REQUEST_TIMEOUT = (10, 30)
SSM_CACHE: Dict[str, Tuple[str, float]] = {}
SSM_CLIENT: Any = None
DDB_RESOURCE: Any = None
REQUEST_SESSION = requests.Session()
SSM_CACHE_TTL_SECONDS = int(os.environ.get("SSM_CACHE_TTL_SECONDS", "300"))
MAX_PLAYLIST_PAGES = int(os.environ.get("MAX_PLAYLIST_PAGES", "100"))
DISCORD_MAX_MESSAGE_LENGTH = 2000

SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
SPOTIFY_API_BASE = "https://api.spotify.com/v1"
DISCORD_API_BASE = "https://discord.com/api/v10"
PLAYLIST_TRACK_FIELDS = (
    "next,items(added_at,added_by.id,track(id,name,external_urls.spotify))"
)

LAST_NOTIFIED_TRACK_KEY = "last_notified_track_id"
SPOTIFY_REFRESH_TOKEN_KEY = "spotify_refresh_token"

CONFIGURATION_ERROR = "configuration"
EXTERNAL_SERVICE_ERROR = "external_service"
DATA_INTEGRITY_ERROR = "data_integrity"

RUN_ID_VAR: ContextVar[str] = ContextVar("run_id", default="")

ENV_CONFIG = {
    "spotify_playlist_id": os.environ.get("SPOTIFY_PLAYLIST_ID"),
    "discord_channel_id": os.environ.get("DISCORD_CHANNEL_ID"),
    "spotify_client_id": os.environ.get("SPOTIFY_CLIENT_ID"),
    "spotify_client_secret": os.environ.get("SPOTIFY_CLIENT_SECRET"),
    "discord_bot_token": os.environ.get("DISCORD_BOT_TOKEN"),
    "spotify_client_id_param": os.environ.get("PARAM_SPOTIFY_CLIENT_ID"),
    "spotify_client_secret_param": os.environ.get("PARAM_SPOTIFY_CLIENT_SECRET"),
    "discord_bot_token_param": os.environ.get("PARAM_DISCORD_BOT_TOKEN"),
    "user_table": os.environ.get("USER_TABLE", "spotify-playlist-notification_user"),
    "last_notified_track_table": os.environ.get(
        "LAST_NOTIFIED_TRACK_TABLE",
        "spotify-playlist-notification_last_notified_track",
    ),
    "spotify_refresh_token_table": os.environ.get(
        "SPOTIFY_REFRESH_TOKEN_TABLE",
        "spotify-playlist-notification_spotify_refresh_token",
    ),
}


class RunError(Exception):
    def __init__(
        self,
        category: str,
        message: str,
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.message = message
        self.details = details

    def to_body(self) -> Dict[str, Any]:
        payload = {"status": "error", "category": self.category, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


@dataclass(frozen=True)
class PlaylistTrack:
    id: str
    name: str
    url: str
    added_by: str
    added_at: Optional[str] = None


@dataclass(frozen=True)
class Playlist:
    id: str
    name: str
    url: str


@dataclass(frozen=True)
class User:
    name: str
    spotify_user_id: str
    discord_user_id: str
    order: int


@dataclass(frozen=True)
class UserMaster:
    """Notification roster in rotation order."""

    users: Tuple[User, ...] = field(default_factory=tuple)

    def next_user(self, spotify_user_id: str) -> Optional[User]:
        if not spotify_user_id:
            return None
        # Wraps around: the last member is followed by the first.
        for index, user in enumerate(self.users):
            if user.spotify_user_id == spotify_user_id:
                return self.users[(index + 1) % len(self.users)]
        return None


@dataclass(frozen=True)
class SpotifyToken:
    access_token: str
    refresh_token: Optional[str] = None


def log(level: str, msg: str, **details: Any) -> None:
    prefix = {
        "info": "[info]",
        "warning": "[warning]",
        "critical": "[critical]",
    }.get(level, "[info]")
    ctx = {}
    run_id = RUN_ID_VAR.get()
    if run_id:
        ctx["run_id"] = run_id
    payload = {**ctx, **details} if details or ctx else None
    suffix = f" {json.dumps(payload, sort_keys=True, default=str)}" if payload else ""
    print(f"{prefix} {msg}{suffix}")


def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    run_id = uuid.uuid4().hex
    token = RUN_ID_VAR.set(run_id)
    log(
        "info",
        "invocation_start",
        scheduled=is_scheduled_event(event),
        aws_request_id=getattr(context, "aws_request_id", None),
        function_name=getattr(context, "function_name", None),
        function_version=getattr(context, "function_version", None),
    )
    try:
        result = process_scheduled_event()
        return {
            "statusCode": 200,
            "headers": {"Content-Type": "application/json"},
            "body": json.dumps(result),
        }
    except RunError as exc:
        log("critical", "run_failed", **exc.to_body())
        raise
    except Exception as exc:  # pylint: disable=broad-except
        log("critical", "run_failed", category="unexpected", error=str(exc))
        raise
    finally:
        RUN_ID_VAR.reset(token)


def is_scheduled_event(event: Dict[str, Any]) -> bool:
    # {"source":"aws.events","detail-type":"Scheduled Event","detail":{...}}
    if not isinstance(event, dict):
        return False
    if event.get("scheduled"):
        return True
    source = event.get("source")
    detail_type = event.get("detail-type")
    return source in {"aws.events", "aws.scheduler"} and detail_type == "Scheduled Event"


def latest_track(tracks: Sequence[PlaylistTrack]) -> Optional[PlaylistTrack]:
    if not tracks:
        return None
    return tracks[-1]


def not_notified_tracks(
    tracks: Sequence[PlaylistTrack], last_notified_track_id: Optional[str]
) -> List[PlaylistTrack]:
    """Return tracks added after the cursor, oldest first.

    A missing cursor means nothing has been notified yet and the current
    playlist is taken as the baseline, so nothing is pending. A cursor that
    no longer matches any track only yields the newest track, which keeps a
    lost cursor from replaying the whole playlist.
    """
    if not tracks or last_notified_track_id is None:
        return []

    pending: List[PlaylistTrack] = []
    for track in reversed(tracks):
        if track.id == last_notified_track_id:
            pending.reverse()
            return pending
        pending.append(track)

    log(
        "warning",
        "stale_cursor",
        last_notified_track_id=last_notified_track_id,
        track_count=len(tracks),
    )
    return [tracks[-1]]


def process_scheduled_event() -> Dict[str, Any]:
    playlist_id = _require_config("spotify_playlist_id")
    channel_id = _require_config("discord_channel_id")
    client_id = get_secret("spotify_client_id")
    client_secret = get_optional_secret("spotify_client_secret")
    bot_token = get_secret("discord_bot_token")

    user_table = get_table("user_table")
    cursor_table = get_table("last_notified_track_table")
    token_table = get_table("spotify_refresh_token_table")

    user_master = extract_user_master(user_table)
    last_notified_track_id = extract_last_notified_track_id(cursor_table)
    refresh_token = extract_spotify_refresh_token(token_table)
    if not refresh_token:
        raise RunError(CONFIGURATION_ERROR, "no spotify refresh token stored")

    spotify_token = request_spotify_token(client_id, client_secret, refresh_token)
    # Spotify may have revoked the stored token once it hands out a new one.
    rotated = bool(spotify_token.refresh_token) and spotify_token.refresh_token != refresh_token
    if rotated:
        update_spotify_refresh_token(token_table, spotify_token.refresh_token)

    playlist = fetch_playlist(spotify_token.access_token, playlist_id)
    tracks = list_all_playlist_tracks(spotify_token.access_token, playlist_id)
    log(
        "info",
        "playlist_fetched",
        playlist_id=playlist.id,
        playlist_name=playlist.name,
        track_count=len(tracks),
    )

    last_track = latest_track(tracks)
    if last_track is None:
        raise RunError(DATA_INTEGRITY_ERROR, "no tracks", {"playlist_id": playlist_id})

    pending = not_notified_tracks(tracks, last_notified_track_id)
    log(
        "info",
        "delta_computed",
        last_notified_track_id=last_notified_track_id,
        latest_track_id=last_track.id,
        pending_count=len(pending),
    )

    next_user: Optional[User] = None
    if last_notified_track_id is None:
        outcome = "bootstrapped"
    elif pending:
        outcome = "notified"
        next_user = user_master.next_user(last_track.added_by)
        if next_user is None:
            raise RunError(
                DATA_INTEGRITY_ERROR,
                "no next user",
                {"spotify_user_id": last_track.added_by},
            )
        send_playlist_update_message(
            bot_token,
            channel_id,
            playlist,
            [track.url for track in pending],
            next_user.discord_user_id,
        )
    else:
        outcome = "idle"

    if last_track.id != last_notified_track_id:
        update_last_notified_track_id(cursor_table, last_track.id)

    summary = {
        "outcome": outcome,
        "playlist_id": playlist_id,
        "pending_count": len(pending),
        "pending_track_ids": [track.id for track in pending],
        "next_user": next_user.name if next_user else None,
        "cursor": last_track.id,
        "refresh_token_rotated": rotated,
    }
    log("info", "scheduled_run_complete", **summary)
    return summary


def build_playlist_update_message(
    playlist: Playlist, track_urls: Sequence[str], next_discord_user_id: str
) -> str:
    header = [
        "## Playlist updated",
        "",
        f"[{playlist.name}]({playlist.url}) has new tracks!",
        "### Added tracks",
        "",
    ]
    footer = [
        "### Up next",
        "",
        f"<@{next_discord_user_id}>",
    ]
    shown = list(track_urls)
    while True:
        hidden = len(track_urls) - len(shown)
        overflow = [f"...and {hidden} more"] if hidden else []
        content = "\n".join(header + shown + overflow + footer)
        # Newest urls are dropped first; the mention always survives.
        if len(content) <= DISCORD_MAX_MESSAGE_LENGTH or not shown:
            return content
        shown.pop()


def send_playlist_update_message(
    bot_token: str,
    channel_id: str,
    playlist: Playlist,
    track_urls: Sequence[str],
    next_discord_user_id: str,
) -> Dict[str, Any]:
    content = build_playlist_update_message(playlist, track_urls, next_discord_user_id)
    url = f"{DISCORD_API_BASE}/channels/{channel_id}/messages"
    try:
        resp = REQUEST_SESSION.post(
            url,
            headers={
                "Authorization": f"Bot {bot_token}",
                "Content-Type": "application/json",
            },
            data=json.dumps({"content": content}),
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as exc:
        raise RunError(EXTERNAL_SERVICE_ERROR, "discord request failed", str(exc)) from exc
    if resp.status_code >= 400:
        log(
            "warning",
            "Discord POST failed",
            channel_id=channel_id,
            status=resp.status_code,
            body=resp.text,
        )
        raise RunError(
            EXTERNAL_SERVICE_ERROR, "discord request failed", {"status": resp.status_code}
        )
    log(
        "info",
        "notification_sent",
        channel_id=channel_id,
        track_count=len(track_urls),
        next_discord_user_id=next_discord_user_id,
    )
    return _json_or_empty(resp)


def request_spotify_token(
    client_id: str, client_secret: Optional[str], refresh_token: str
) -> SpotifyToken:
    data = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
    }
    auth = None
    if client_secret:
        auth = (client_id, client_secret)
    else:
        data["client_id"] = client_id

    try:
        resp = REQUEST_SESSION.post(
            SPOTIFY_TOKEN_URL,
            data=data,
            auth=auth,
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as exc:
        raise RunError(
            EXTERNAL_SERVICE_ERROR, "unable to refresh Spotify token", str(exc)
        ) from exc

    payload = _json_or_empty(resp)
    if resp.status_code >= 400:
        error_code, description = parse_spotify_error(payload)
        log(
            "warning",
            "Spotify token refresh failed",
            status=resp.status_code,
            error=error_code,
            description=description,
        )
        raise RunError(
            EXTERNAL_SERVICE_ERROR,
            "unable to refresh Spotify token",
            {"status": resp.status_code, "error": error_code},
        )

    access_token = payload.get("access_token")
    if not access_token:
        log("critical", "Spotify response missing access_token")
        raise RunError(EXTERNAL_SERVICE_ERROR, "Spotify token missing")

    return SpotifyToken(
        access_token=access_token,
        refresh_token=payload.get("refresh_token") or None,
    )


def fetch_playlist(access_token: str, playlist_id: str) -> Playlist:
    payload = spotify_get(
        f"{SPOTIFY_API_BASE}/playlists/{playlist_id}",
        access_token,
        params={"fields": "id,name,external_urls"},
    )
    if not payload.get("id"):
        raise RunError(EXTERNAL_SERVICE_ERROR, "spotify playlist payload missing id")
    return Playlist(
        id=payload["id"],
        name=payload.get("name") or "",
        url=_safe_get(payload, "external_urls", "spotify") or "",
    )


def list_all_playlist_tracks(access_token: str, playlist_id: str) -> List[PlaylistTrack]:
    url: Optional[str] = f"{SPOTIFY_API_BASE}/playlists/{playlist_id}/tracks"
    params: Optional[Dict[str, Any]] = {"limit": 100, "fields": PLAYLIST_TRACK_FIELDS}
    tracks: List[PlaylistTrack] = []
    page_count = 0

    while url:
        if page_count >= MAX_PLAYLIST_PAGES:
            log(
                "warning",
                "Reached max playlist pages",
                playlist_id=playlist_id,
                max_pages=MAX_PLAYLIST_PAGES,
            )
            raise RunError(
                EXTERNAL_SERVICE_ERROR,
                "playlist exceeds page limit",
                {"max_pages": MAX_PLAYLIST_PAGES},
            )
        payload = spotify_get(url, access_token, params=params)
        page_count += 1
        for item in payload.get("items") or []:
            track = parse_playlist_item(item)
            if track is None:
                log(
                    "warning",
                    "Skipping playlist item without track id",
                    playlist_id=playlist_id,
                    added_at=item.get("added_at") if isinstance(item, dict) else None,
                )
                continue
            tracks.append(track)
        # next already carries the query string
        url = payload.get("next")
        params = None

    return tracks


def parse_playlist_item(item: Any) -> Optional[PlaylistTrack]:
    if not isinstance(item, dict):
        return None
    track = item.get("track")
    if not isinstance(track, dict) or not track.get("id"):
        return None
    return PlaylistTrack(
        id=track["id"],
        name=track.get("name") or "",
        url=_safe_get(track, "external_urls", "spotify") or "",
        added_by=_safe_get(item, "added_by", "id") or "",
        added_at=item.get("added_at"),
    )


def spotify_get(
    url: str, access_token: str, params: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    try:
        resp = REQUEST_SESSION.get(
            url,
            headers={"Authorization": f"Bearer {access_token}"},
            params=params,
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as exc:
        raise RunError(EXTERNAL_SERVICE_ERROR, "spotify request failed", str(exc)) from exc
    if resp.status_code >= 400:
        log(
            "warning",
            "Spotify GET failed",
            url=url,
            status=resp.status_code,
            body=resp.text,
        )
        raise RunError(
            EXTERNAL_SERVICE_ERROR, "spotify request failed", {"status": resp.status_code}
        )
    try:
        return resp.json()
    except ValueError as exc:
        raise RunError(EXTERNAL_SERVICE_ERROR, "spotify response is not json") from exc


def parse_spotify_error(
    payload: Optional[Dict[str, Any]]
) -> Tuple[Optional[str], Optional[str]]:
    if not isinstance(payload, dict):
        return None, None
    error_value = payload.get("error")
    error_description = payload.get("error_description")
    if isinstance(error_value, dict):
        error_value = error_value.get("message")
    if isinstance(error_description, dict):
        error_description = error_description.get("message")
    if isinstance(error_value, str):
        error_value = error_value.strip()
    if isinstance(error_description, str):
        error_description = error_description.strip()
    return error_value, error_description


def get_table(config_key: str) -> Any:
    global DDB_RESOURCE
    if DDB_RESOURCE is None:
        DDB_RESOURCE = boto3.resource("dynamodb")
    return DDB_RESOURCE.Table(_require_config(config_key))


def extract_user_master(table: Any) -> UserMaster:
    items: List[Dict[str, Any]] = []
    last_key = None

    while True:
        scan_kwargs: Dict[str, Any] = {}
        if last_key:
            scan_kwargs["ExclusiveStartKey"] = last_key
        response = _ddb_call("scan", table.scan, **scan_kwargs)
        items.extend(response.get("Items", []))
        last_key = response.get("LastEvaluatedKey")
        if not last_key:
            break

    users = [
        User(
            name=_clean_string(item.get("name")),
            spotify_user_id=_clean_string(item.get("spotify_user_id")),
            discord_user_id=_clean_string(item.get("discord_user_id")),
            order=_to_int(item.get("order"), 0),
        )
        for item in items
    ]
    if not users:
        raise RunError(DATA_INTEGRITY_ERROR, "user roster is empty")
    incomplete = [u.name for u in users if not u.spotify_user_id or not u.discord_user_id]
    if incomplete:
        raise RunError(
            DATA_INTEGRITY_ERROR,
            "user roster entry missing spotify_user_id or discord_user_id",
            {"names": incomplete},
        )
    users.sort(key=lambda user: user.order)
    log("info", "roster_loaded", user_count=len(users), names=[u.name for u in users])
    return UserMaster(users=tuple(users))


def extract_last_notified_track_id(table: Any) -> Optional[str]:
    return _get_singleton_value(table, LAST_NOTIFIED_TRACK_KEY, "id")


def update_last_notified_track_id(table: Any, new_track_id: str) -> None:
    _ddb_call(
        "update_item",
        table.update_item,
        Key={"singleton_key": LAST_NOTIFIED_TRACK_KEY},
        UpdateExpression="SET id = :new_id",
        ExpressionAttributeValues={":new_id": new_track_id},
    )
    log("info", "cursor_updated", last_notified_track_id=new_track_id)


def extract_spotify_refresh_token(table: Any) -> Optional[str]:
    return _get_singleton_value(table, SPOTIFY_REFRESH_TOKEN_KEY, "refresh_token")


def update_spotify_refresh_token(table: Any, new_refresh_token: str) -> None:
    _ddb_call(
        "update_item",
        table.update_item,
        Key={"singleton_key": SPOTIFY_REFRESH_TOKEN_KEY},
        UpdateExpression="SET refresh_token = :new_refresh_token",
        ExpressionAttributeValues={":new_refresh_token": new_refresh_token},
    )
    log("info", "refresh_token_rotated")


def _get_singleton_value(table: Any, singleton_key: str, attribute: str) -> Optional[str]:
    response = _ddb_call("get_item", table.get_item, Key={"singleton_key": singleton_key})
    item = response.get("Item")
    if not item:
        return None
    value = item.get(attribute)
    if not isinstance(value, str) or not value:
        return None
    return value


def _ddb_call(operation: str, func: Any, **kwargs: Any) -> Dict[str, Any]:
    try:
        return func(**kwargs) or {}
    except (BotoCoreError, ClientError) as exc:
        log("warning", "DynamoDB call failed", operation=operation, error=str(exc))
        raise RunError(
            EXTERNAL_SERVICE_ERROR, f"dynamodb {operation} failed", str(exc)
        ) from exc


def get_secret(config_key: str) -> str:
    value = get_optional_secret(config_key)
    if not value:
        raise RunError(
            CONFIGURATION_ERROR, f"missing environment configuration for {config_key}"
        )
    return value


def get_optional_secret(config_key: str) -> Optional[str]:
    value = _clean_string(ENV_CONFIG.get(config_key))
    if value:
        return value
    param_name = _clean_string(ENV_CONFIG.get(f"{config_key}_param"))
    if not param_name:
        return None
    return ssm_get_parameter(param_name)


def ssm_get_parameter(name: str, force_refresh: bool = False) -> str:
    global SSM_CLIENT
    now = time.time()
    if not force_refresh:
        cached = SSM_CACHE.get(name)
        if cached and cached[1] > now:
            return cached[0]

    if SSM_CLIENT is None:
        SSM_CLIENT = boto3.client("ssm")
    try:
        response = SSM_CLIENT.get_parameter(Name=name, WithDecryption=True)
    except SSM_CLIENT.exceptions.ParameterNotFound as exc:
        raise RunError(CONFIGURATION_ERROR, f"ssm parameter {name} not found") from exc
    except (BotoCoreError, ClientError) as exc:
        raise RunError(EXTERNAL_SERVICE_ERROR, f"ssm parameter {name} unreadable") from exc

    value = response["Parameter"]["Value"]
    SSM_CACHE[name] = (value, now + SSM_CACHE_TTL_SECONDS)
    return value


def _require_config(config_key: str) -> str:
    value = _clean_string(ENV_CONFIG.get(config_key))
    if not value:
        raise RunError(
            CONFIGURATION_ERROR, f"missing environment configuration for {config_key}"
        )
    return value


def _json_or_empty(resp: Any) -> Dict[str, Any]:
    if not resp.text:
        return {}
    try:
        payload = resp.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _safe_get(container: Dict[str, Any], *keys: str) -> Optional[Any]:
    value: Any = container
    for key in keys:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def _clean_string(value: Optional[str]) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()


def _to_int(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, Decimal):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def main() -> int:
    token = RUN_ID_VAR.set(uuid.uuid4().hex)
    try:
        process_scheduled_event()
    except RunError as exc:
        log("critical", "run_failed", **exc.to_body())
        return 1
    finally:
        RUN_ID_VAR.reset(token)
    return 0


if __name__ == "__main__":
    sys.exit(main())
