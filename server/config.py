"""
Environment configuration for the FortressMDM server.

Every getter reads the environment at call time so that secrets can be
rotated by restarting the process and tests can patch them with monkeypatch.
"""
import os
from typing import Optional


class Config:
    """Application configuration read from environment variables"""

    DEFAULT_DATABASE_URL = "sqlite:///./data.db"
    DEFAULT_SERVER_URL = "http://localhost:8000"

    @property
    def server_url(self) -> str:
        """
        Base URL the device agent talks to.

        Priority:
        1. SERVER_URL environment variable
        2. Fallback: http://localhost:8000

        Returns:
            str: The server URL without trailing slash
        """
        manual_url = os.getenv("SERVER_URL")
        if manual_url:
            return self._normalize_url(manual_url)
        return self.DEFAULT_SERVER_URL

    @staticmethod
    def _normalize_url(url: str) -> str:
        """
        Normalize URL to ensure it has a protocol prefix and no trailing slash.

        Args:
            url: URL that may or may not have a protocol

        Returns:
            str: URL with https:// prefix (or http:// for localhost), without trailing slash
        """
        url = url.strip()

        if url.startswith("http://") or url.startswith("https://"):
            return url.rstrip("/")

        if "localhost" in url or url.startswith("127.0.0.1"):
            return f"http://{url}".rstrip("/")
        else:
            return f"https://{url}".rstrip("/")

    def get_admin_key(self) -> Optional[str]:
        """Get the admin API key guarding ops endpoints"""
        return os.getenv("ADMIN_KEY")

    def get_enrollment_code(self) -> Optional[str]:
        """Get the shared enrollment code devices present to /api/enroll"""
        return os.getenv("MDM_ENROLLMENT_CODE")

    def get_emergency_password(self) -> Optional[str]:
        """Get the out-of-band secret for emergency lock/wipe"""
        return os.getenv("ADMIN_EMERGENCY_PASSWORD")

    def get_database_url(self) -> str:
        """Get the database URL from environment"""
        return os.getenv("DATABASE_URL", self.DEFAULT_DATABASE_URL)

    def get_status_warning_after_seconds(self) -> int:
        # Two missed heartbeats at the default interval is still "online"
        return int(os.getenv("STATUS_WARNING_AFTER_SECONDS", "300"))

    def get_status_offline_after_seconds(self) -> int:
        return int(os.getenv("STATUS_OFFLINE_AFTER_SECONDS", "3600"))

    def get_heartbeat_interval_seconds(self) -> int:
        return int(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "30"))

    def validate(self) -> tuple[bool, list[str], list[str]]:
        """
        Validate that required configuration is present.

        Returns:
            tuple: (is_valid, list_of_errors, list_of_warnings)
        """
        errors = []
        warnings = []

        if not self.get_enrollment_code():
            warnings.append("MDM_ENROLLMENT_CODE not set - every device enrollment will be rejected")

        emergency_password = self.get_emergency_password()
        if not emergency_password:
            warnings.append("ADMIN_EMERGENCY_PASSWORD not set - emergency lock/wipe is disabled")
        elif len(emergency_password) < 12:
            warnings.append("ADMIN_EMERGENCY_PASSWORD should be at least 12 characters for security")

        if not self.get_admin_key():
            warnings.append("ADMIN_KEY not set - /metrics is unreachable")

        try:
            warning_after = self.get_status_warning_after_seconds()
            offline_after = self.get_status_offline_after_seconds()
            if warning_after >= offline_after:
                errors.append("STATUS_WARNING_AFTER_SECONDS must be lower than STATUS_OFFLINE_AFTER_SECONDS")
        except ValueError:
            errors.append("STATUS_*_AFTER_SECONDS must be integers")

        if "sqlite" in self.get_database_url().lower():
            warnings.append("SQLite database detected - PostgreSQL recommended for production scale")

        return (len(errors) == 0, errors, warnings)

    def print_config_summary(self):
        """Print configuration summary for debugging"""
        print("\n" + "=" * 60)
        print("FortressMDM Configuration")
        print("=" * 60)
        print(f"Server URL: {self.server_url}")
        print(f"Enrollment Code: {'✓ Set' if self.get_enrollment_code() else '✗ Missing'}")
        print(f"Emergency Password: {'✓ Set' if self.get_emergency_password() else '✗ Missing'}")
        print(f"Admin Key: {'✓ Set' if self.get_admin_key() else '✗ Missing'}")
        print(f"Database: {self.get_database_url()}")

        is_valid, errors, warnings = self.validate()
        if is_valid:
            print("Status: ✓ All required configuration present")
            if warnings:
                print(f"Warnings: {len(warnings)} configuration warnings")
        else:
            print("Status: ✗ Configuration issues detected:")
            for error in errors:
                print(f"  - {error}")
        print("=" * 60 + "\n")


# Global config instance
config = Config()
