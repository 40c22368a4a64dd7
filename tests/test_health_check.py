"""
בדיקות יחידה ל-Health Check endpoints — liveness ו-readiness.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
from redis.exceptions import ConnectionError as RedisConnectionError


def _patch_checks(db="ok", redis="ok", celery="ok"):
    """patch לשלוש בדיקות התלויות בבת אחת"""
    base = "app.domain.services.health_service"
    return (
        patch(f"{base}._check_db", new_callable=AsyncMock, return_value=db),
        patch(f"{base}._check_redis", new_callable=AsyncMock, return_value=redis),
        patch(f"{base}._check_celery", new_callable=AsyncMock, return_value=celery),
    )


# ============================================================================
# Liveness Probe — GET /health
# ============================================================================


class TestLivenessProbe:

    @pytest.mark.unit
    async def test_liveness_returns_healthy(self, test_client: httpx.AsyncClient) -> None:
        """liveness probe מחזיר status=healthy תמיד."""
        response = await test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


# ============================================================================
# Readiness Probe — GET /health/ready
# ============================================================================


class TestReadinessProbe:

    @pytest.mark.unit
    async def test_readiness_all_healthy(self, test_client: httpx.AsyncClient) -> None:
        """כשכל התלויות תקינות — status=healthy ו-HTTP 200."""
        db, redis, celery = _patch_checks()
        with db, redis, celery:
            response = await test_client.get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "db": "ok", "redis": "ok", "celery": "ok"}

    @pytest.mark.unit
    async def test_readiness_db_down(self, test_client: httpx.AsyncClient) -> None:
        """כש-DB לא זמין — status=degraded ו-HTTP 503."""
        db, redis, celery = _patch_checks(db="error: db_unavailable")
        with db, redis, celery:
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data["db"] == "error: db_unavailable"
        assert data["redis"] == "ok"

    @pytest.mark.unit
    async def test_readiness_multiple_failures(self, test_client: httpx.AsyncClient) -> None:
        db, redis, celery = _patch_checks(redis="error: redis_unavailable", celery="error: celery_unavailable")
        with db, redis, celery:
            response = await test_client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["db"] == "ok"
        assert data["redis"].startswith("error:")
        assert data["celery"].startswith("error:")


# ============================================================================
# בדיקות יחידה לפונקציות בדיקה פנימיות
# ============================================================================


class TestHealthCheckFunctions:

    def _session_factory(self, execute_side_effect=None):
        mock_session = AsyncMock()
        mock_session.execute = AsyncMock(side_effect=execute_side_effect)
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)
        return MagicMock(return_value=MagicMock(return_value=mock_session))

    @pytest.mark.unit
    async def test_check_db_success(self) -> None:
        with patch(
            "app.domain.services.health_service.get_session_factory",
            self._session_factory(),
        ):
            from app.domain.services.health_service import _check_db
            assert await _check_db() == "ok"

    @pytest.mark.unit
    async def test_check_db_failure_hides_details(self) -> None:
        """הודעת השגיאה מסוננת — ללא פרטי תשתית"""
        with patch(
            "app.domain.services.health_service.get_session_factory",
            self._session_factory(ConnectionError("10.0.0.5:5432 refused")),
        ):
            from app.domain.services.health_service import _check_db
            result = await _check_db()

        assert result == "error: db_unavailable"

    @pytest.mark.unit
    async def test_check_redis_success(self, fake_redis) -> None:
        from app.domain.services.health_service import _check_redis
        assert await _check_redis() == "ok"

    @pytest.mark.unit
    async def test_check_redis_failure(self) -> None:
        with patch(
            "app.domain.services.health_service.get_redis",
            new_callable=AsyncMock,
            side_effect=RedisConnectionError("refused"),
        ):
            from app.domain.services.health_service import _check_redis
            result = await _check_redis()

        assert result == "error: redis_unavailable"

    @pytest.mark.unit
    async def test_check_celery_success(self) -> None:
        mock_client = AsyncMock()
        mock_client.ping = AsyncMock(return_value=True)
        mock_client.aclose = AsyncMock()

        with patch(
            "app.domain.services.health_service.aioredis.from_url",
            return_value=mock_client,
        ):
            from app.domain.services.health_service import _check_celery
            result = await _check_celery()

        assert result == "ok"
        mock_client.aclose.assert_awaited_once()

    @pytest.mark.unit
    async def test_check_celery_failure(self) -> None:
        mock_client = AsyncMock()
        mock_client.ping = AsyncMock(side_effect=ConnectionError("refused"))
        mock_client.aclose = AsyncMock()

        with patch(
            "app.domain.services.health_service.aioredis.from_url",
            return_value=mock_client,
        ):
            from app.domain.services.health_service import _check_celery
            result = await _check_celery()

        assert result == "error: celery_unavailable"
