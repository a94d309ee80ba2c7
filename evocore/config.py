"""Global configuration — loaded from environment variables."""

from pydantic import model_validator
from pydantic_settings import BaseSettings


class CoreSettings(BaseSettings):
    log_level: str = "INFO"

    # Health monitor
    health_check_interval_seconds: float = 60.0
    probe_timeout_seconds: float = 5.0
    timeout_failure_limit: int = 3  # consecutive timeouts that force FAILED
    max_recovery_attempts: int = 3  # failed probes while FAILED before retirement
    health_history_limit: int = 500

    # Agent selection
    capability_weight: float = 0.4
    availability_weight: float = 0.3
    performance_weight: float = 0.3
    execution_timeout_seconds: float = 300.0

    # Pattern store
    pattern_similarity_threshold: float = 0.8
    pattern_occurrence_threshold: int = 3
    pattern_confidence_threshold: float = 0.7

    # Evolution trigger queue
    trigger_queue_capacity: int = 1000
    trigger_drain_interval_seconds: float = 1.0
    evolution_history_limit: int = 1000
    max_failed_attempts: int = 3
    pause_duration_seconds: float = 3600.0

    # Harmony controller
    harmony_interval_seconds: float = 300.0
    harmony_pattern_weight: float = 0.33
    harmony_task_weight: float = 0.33
    harmony_agent_weight: float = 0.33
    harmony_balanced_threshold: float = 0.8
    harmony_critical_threshold: float = 0.5

    model_config = {"env_prefix": "EVOCORE_"}

    @model_validator(mode="after")
    def _check_weights(self) -> "CoreSettings":
        harmony = (
            self.harmony_pattern_weight
            + self.harmony_task_weight
            + self.harmony_agent_weight
        )
        if harmony <= 0:
            raise ValueError("harmony weights must sum to a positive value")
        if self.harmony_critical_threshold > self.harmony_balanced_threshold:
            raise ValueError("critical threshold must not exceed balanced threshold")
        if self.trigger_queue_capacity < 1:
            raise ValueError("trigger_queue_capacity must be at least 1")
        return self


settings = CoreSettings()
