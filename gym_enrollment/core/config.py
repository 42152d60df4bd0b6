# gym_enrollment/core/config.py
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    PROJECT_NAME: str = "Gym Enrollment Service"
    DATABASE_URL: str = "sqlite:///./gym_enrollment.db"

    # "memory" (dev/test) or "mqtt" (broker-backed document store)
    STORE_BACKEND: str = "memory"
    MQTT_BROKER: str = "localhost"
    MQTT_PORT: int = 1883
    MQTT_USERNAME: str = ""
    MQTT_PASSWORD: str = ""
    MQTT_BASE_TOPIC: str = "gymsync"

    ENROLLMENT_TIMEOUT_SECONDS: float = 180
    REACHABILITY_WINDOW_SECONDS: float = 120
    ENROLLMENT_MAILBOX_GUARD: bool = False
    OPERATOR_NAME: str = "gym_api"

    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    def get_mqtt_host(self) -> str:
        # Broker may be given as a URL: "mqtt://host" or "tcp://host"
        return self.MQTT_BROKER.replace("mqtt://", "").replace("tcp://", "").strip()

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
