"""
Application configuration loaded from environment variables.
Uses pydantic-settings so every value can be overridden via a .env file.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── JWT ──────────────────────────────────────────────────────────────────
    # Secret used to sign/verify JWT tokens.  Change this in production!
    jwt_secret_key: str = "changeme-super-secret-key"
    jwt_algorithm: str = "HS256"
    # Token lifetime in minutes
    jwt_expire_minutes: int = 60

    # ── API operators ─────────────────────────────────────────────────────────
    # Comma-separated "username:secret" pairs; secrets may be bcrypt hashes.
    api_users: str = "admin:secret"

    # ── AWS ──────────────────────────────────────────────────────────────────
    # Used only when the cluster does not report its own region.
    aws_region: str = "us-east-1"
    aws_profile: str = "default"
    # Leave blank to use the default shared credentials file (~/.aws/credentials)
    aws_credentials_file: str = ""

    # ── Cluster ──────────────────────────────────────────────────────────────
    kubeconfig: str = ""
    # Empty means "use the platform the cluster reports".
    provider_kind: str = ""
    # Tag key prefix marking resources that belong to a cluster deployment.
    ownership_tag_prefix: str = "cluster-owned-by/"
    worker_sg_suffix: str = "-worker-sg"
    worker_profile_suffix: str = "-worker-profile"

    # ── Windows instance ─────────────────────────────────────────────────────
    output_dir: str = "."
    ledger_file_name: str = "windows-node-installer.json"
    # Leave blank to pick the latest published image matching the pattern.
    image_id: str = ""
    image_owner: str = "amazon"
    image_name_pattern: str = "Windows_Server-2019-English-Full-ContainersLatest-*"
    instance_type: str = "m4.large"
    key_name: str = "libra"
    private_key_path: str = ""
    windows_username: str = "Administrator"
    public_ip_url: str = "https://checkip.amazonaws.com"

    # ── Polling (seconds) ────────────────────────────────────────────────────
    poll_interval: float = 10.0
    running_timeout: float = 300.0
    serviceable_timeout: float = 1200.0
    password_timeout: float = 900.0
    termination_timeout: float = 600.0
    # Overall budget for one create / destroy call; 0 disables it.
    create_deadline: float = 3600.0
    destroy_deadline: float = 900.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    # ── Helpers ───────────────────────────────────────────────────────────────
    def get_api_users(self) -> dict[str, str]:
        """Return the operator map {username: secret}."""
        users: dict[str, str] = {}
        for pair in self.api_users.split(","):
            pair = pair.strip()
            if ":" in pair:
                username, password = pair.split(":", 1)
                users[username.strip()] = password.strip()
        return users


settings = Settings()
