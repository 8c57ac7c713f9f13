import os

from config.config_loader import get_project_dir, load_config


def check_config(config=None):
    """Fail fast when required deployment values are missing."""
    config = config or load_config()
    missing = []
    firebase = config.get("firebase", {})
    if not firebase.get("bucket"):
        missing.append("firebase.bucket (or FIREBASE_STORAGE_BUCKET)")
    objects_config = config.get("objects", {})
    if objects_config.get("removal_mode", "inline") == "inline" and not config.get(
        "removebg", {}
    ).get("api_key"):
        missing.append("removebg.api_key (or REMOVEBG_API_KEY)")
    if config.get("server", {}).get("auth", {}).get("enabled", True) and not firebase.get(
        "project_id"
    ):
        missing.append("firebase.project_id (or FIREBASE_PROJECT_ID)")
    if missing:
        raise ValueError("Missing configuration: " + ", ".join(missing))


def _first_json_file(directory: str) -> str:
    try:
        json_files = sorted(f for f in os.listdir(directory) if f.endswith(".json"))
    except OSError:
        return ""
    for name in json_files:
        found_file = os.path.join(directory, name)
        if os.path.isfile(found_file):
            return found_file
    return ""


def get_gcp_credentials_path() -> str:
    """Return the path to GCP credentials if set via env/config.

    Precedence:
      1) GOOGLE_APPLICATION_CREDENTIALS env var (if it's a file)
      2) If env var points to a directory, sa.json or any JSON file inside it
      3) /opt/secrets/gcp/ directory (Docker secret mount)
      4) data/.gcp/sa.json, then any JSON file under data/.gcp/
    """
    path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
    if path:
        if os.path.isfile(path):
            return path
        if os.path.isdir(path):
            sa_file = os.path.join(path, "sa.json")
            if os.path.isfile(sa_file):
                return sa_file
            found = _first_json_file(path)
            if found:
                return found

    found = _first_json_file("/opt/secrets/gcp")
    if found:
        return found

    default_path = os.path.join(get_project_dir(), "data/.gcp/sa.json")
    if os.path.isfile(default_path):
        return default_path

    return _first_json_file(os.path.join(get_project_dir(), "data/.gcp"))
