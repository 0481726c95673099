"""过期预占清理脚本单元测试"""
from contextlib import contextmanager

from unittest.mock import Mock, patch

from app.jobs import expire_holds as job


@contextmanager
def fake_scope(db):
    yield db


class TestExpireHoldsJob:
    """本地清理脚本测试类"""

    def test_run_sweep(self):
        """测试实际清理"""
        service_mock = Mock()
        service_mock.expire_holds.return_value = 4

        with patch.object(job, 'session_scope', return_value=fake_scope(Mock())), \
             patch.object(job, 'AvailabilityService', return_value=service_mock):
            assert job.run_sweep(batch_size=200) == 4

        service_mock.expire_holds.assert_called_once_with(200)
        service_mock.count_expired_holds.assert_not_called()

    def test_run_sweep_dry_run(self):
        """测试试运行只统计不修改"""
        service_mock = Mock()
        service_mock.count_expired_holds.return_value = 7

        with patch.object(job, 'session_scope', return_value=fake_scope(Mock())), \
             patch.object(job, 'AvailabilityService', return_value=service_mock):
            assert job.run_sweep(dry_run=True) == 7

        service_mock.expire_holds.assert_not_called()

    def test_main_arguments(self, capsys):
        with patch.object(job, 'run_sweep', return_value=3) as mock_run:
            assert job.main(['--batch-size', '50', '--dry-run']) == 0

        mock_run.assert_called_once_with(50, True)
        assert "发现 3 条过期预占" in capsys.readouterr().out

    def test_main_failure(self, capsys):
        """测试执行失败返回非零退出码"""
        with patch.object(job, 'run_sweep', side_effect=Exception("数据库不可用")):
            assert job.main([]) == 1

        assert "数据库不可用" in capsys.readouterr().out
