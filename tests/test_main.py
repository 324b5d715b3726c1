from unittest.mock import Mock, patch

import pytest

from wabot import main


class TestCacheSweeper:
    def test_sweep_caches_covers_every_cache(self):
        intent_cache, faq_cache = Mock(), Mock()
        intent_cache.sweep.return_value = {"namespace": "intent", "memory_removed": 2, "durable_removed": 0}
        faq_cache.sweep.return_value = {"namespace": "faq_query_embedding", "memory_removed": 0, "durable_removed": 0}

        with patch.object(main.registry, "get_caches", return_value=[intent_cache, faq_cache]):
            report = main.sweep_caches()

        assert [item["namespace"] for item in report] == ["intent", "faq_query_embedding"]

    def test_disabled_under_pytest(self):
        assert main._is_cache_sweeper_enabled() is False

    def test_env_flag_parsing(self):
        assert main._is_env_enabled(None) is True
        assert main._is_env_enabled("off") is False
        assert main._is_env_enabled("0", default=True) is False
        assert main._is_env_enabled("yes") is True


class TestSweeperLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        with patch.object(main, "_is_cache_sweeper_enabled", return_value=True), patch.object(
            main.registry, "reset"
        ) as reset:
            await main.start_cache_sweeper()
            task = main._cache_sweeper_task
            assert task is not None and not task.done()

            await main.stop_cache_sweeper()

        assert task.cancelled() or task.done()
        assert main._cache_sweeper_task is None
        reset.assert_called_once()
