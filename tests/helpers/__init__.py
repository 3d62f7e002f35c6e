from .fakes import FakeClock, RecordingSleep, build_config, counter_value, fast_service

__all__ = ["FakeClock", "RecordingSleep", "build_config", "counter_value", "fast_service"]
