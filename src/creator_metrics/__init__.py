"""크리에이터 소셜 지표 스냅샷 저장/델타/이상 탐지/신선도 점검."""

__version__ = "0.1.0"
