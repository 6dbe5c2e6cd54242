from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	# Auth configuration
	jwt_secret_key: str = Field(default="change-me", validation_alias="JWT_SECRET_KEY")
	jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
	access_token_expire_minutes: int = Field(default=120, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")
	# Seed admin (created on startup when both are set)
	seed_admin_username: str | None = Field(default=None, validation_alias="SEED_ADMIN_USERNAME")
	seed_admin_password: str | None = Field(default=None, validation_alias="SEED_ADMIN_PASSWORD")

	# Database
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")

	# Container engine; None means docker.from_env()
	docker_base_url: str | None = Field(default=None, validation_alias="DOCKER_HOST")
	image_javascript: str = Field(default="codespace-javascript", validation_alias="IMAGE_JAVASCRIPT")
	image_python: str = Field(default="codespace-python", validation_alias="IMAGE_PYTHON")
	image_java: str = Field(default="codespace-java", validation_alias="IMAGE_JAVA")
	image_cpp: str = Field(default="codespace-cpp", validation_alias="IMAGE_CPP")
	editor_container_port: int = Field(default=8080, validation_alias="EDITOR_CONTAINER_PORT")
	editor_host: str = Field(default="localhost", validation_alias="EDITOR_HOST")
	editor_project_path: str = Field(default="/home/coder/code-server/project", validation_alias="EDITOR_PROJECT_PATH")
	template_workspace_dir: str = Field(default="template-workspace", validation_alias="TEMPLATE_WORKSPACE_DIR")
	# Shared local credential of the embedded editor (not a platform login)
	editor_password: str = Field(default="cs1234", validation_alias="EDITOR_PASSWORD")
	provision_timeout_seconds: float = Field(default=15.0, validation_alias="PROVISION_TIMEOUT_SECONDS")

	# Browser driving
	browser_executable_path: str | None = Field(default=None, validation_alias="BROWSER_EXECUTABLE_PATH")
	navigation_timeout_seconds: float = Field(default=45.0, validation_alias="NAVIGATION_TIMEOUT_SECONDS")
	login_timeout_seconds: float = Field(default=15.0, validation_alias="LOGIN_TIMEOUT_SECONDS")
	trust_dialog_timeout_seconds: float = Field(default=20.0, validation_alias="TRUST_DIALOG_TIMEOUT_SECONDS")
	content_poll_attempts: int = Field(default=5, validation_alias="CONTENT_POLL_ATTEMPTS")
	content_poll_interval_seconds: float = Field(default=2.0, validation_alias="CONTENT_POLL_INTERVAL_SECONDS")
	ui_settle_seconds: float = Field(default=2.0, validation_alias="UI_SETTLE_SECONDS")

	# Capture
	staging_dir: str = Field(default="screenshots", validation_alias="STAGING_DIR")
	jpeg_quality: int = Field(default=90, validation_alias="JPEG_QUALITY")
	fallback_width: int = Field(default=1920, validation_alias="FALLBACK_SCREEN_WIDTH")
	fallback_height: int = Field(default=1080, validation_alias="FALLBACK_SCREEN_HEIGHT")
	display_capture_rounds: int = Field(default=8, validation_alias="DISPLAY_CAPTURE_ROUNDS")
	display_capture_interval_seconds: float = Field(default=3.0, validation_alias="DISPLAY_CAPTURE_INTERVAL_SECONDS")

	# Scheduling
	periodic_capture_enabled: bool = Field(default=True, validation_alias="PERIODIC_CAPTURE_ENABLED")
	periodic_capture_seconds: float = Field(default=30.0, validation_alias="PERIODIC_CAPTURE_SECONDS")

	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
