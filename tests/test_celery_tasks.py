"""Celery 任务单元测试"""
import pytest
from unittest.mock import Mock, patch

from celery_app import app as celery_app
from tasks.hold_tasks import expire_holds, mark_overdue


class TestHoldTasks:
    """预占 / 订单 Celery 任务测试类"""

    def test_expire_holds_success(self):
        """测试过期预占清理任务成功"""
        service_mock = Mock()
        service_mock.expire_holds.return_value = 5
        db_mock = Mock()

        with patch('tasks.hold_tasks.SessionLocal') as mock_session_local, \
             patch('tasks.hold_tasks.AvailabilityService') as mock_availability_service:

            mock_session_local.return_value = db_mock
            mock_availability_service.return_value = service_mock

            result = expire_holds(batch_size=100)

            assert result == "成功置为过期 5 条预占"
            service_mock.expire_holds.assert_called_once_with(100)
            db_mock.close.assert_called_once()

    def test_expire_holds_exception(self):
        """测试过期预占清理任务异常"""
        db_mock = Mock()

        with patch('tasks.hold_tasks.SessionLocal') as mock_session_local, \
             patch('tasks.hold_tasks.AvailabilityService') as mock_availability_service:

            mock_session_local.return_value = db_mock
            mock_availability_service.side_effect = Exception("清理过程出错")

            with pytest.raises(Exception) as exc_info:
                expire_holds(batch_size=50)

            assert "清理过程出错" in str(exc_info.value)
            db_mock.rollback.assert_called_once()
            db_mock.close.assert_called_once()

    def test_mark_overdue_success(self):
        """测试逾期订单标记任务成功"""
        service_mock = Mock()
        service_mock.mark_overdue_bookings.return_value = 2
        db_mock = Mock()

        with patch('tasks.hold_tasks.SessionLocal') as mock_session_local, \
             patch('tasks.hold_tasks.AvailabilityService'), \
             patch('tasks.hold_tasks.BookingService') as mock_booking_service:

            mock_session_local.return_value = db_mock
            mock_booking_service.return_value = service_mock

            result = mark_overdue()

            assert result == "标记逾期订单 2 条"
            service_mock.mark_overdue_bookings.assert_called_once_with(500)

    def test_mark_overdue_exception(self):
        db_mock = Mock()

        with patch('tasks.hold_tasks.SessionLocal') as mock_session_local, \
             patch('tasks.hold_tasks.AvailabilityService'), \
             patch('tasks.hold_tasks.BookingService') as mock_booking_service:

            mock_session_local.return_value = db_mock
            mock_booking_service.return_value.mark_overdue_bookings.side_effect = Exception("数据库错误")

            with pytest.raises(Exception):
                mark_overdue()

            db_mock.rollback.assert_called_once()


class TestCeleryConfig:
    """Celery 配置测试类"""

    def test_task_names(self):
        assert expire_holds.name == 'tasks.holds.expire_holds'
        assert mark_overdue.name == 'tasks.bookings.mark_overdue'

    def test_beat_schedule(self):
        """测试定时任务配置"""
        schedule = celery_app.conf.beat_schedule

        assert schedule['expire-holds']['task'] == 'tasks.holds.expire_holds'
        assert schedule['expire-holds']['schedule'] == 300.0
        assert schedule['mark-overdue-bookings']['task'] == 'tasks.bookings.mark_overdue'

    def test_task_routes(self):
        routes = celery_app.conf.task_routes
        assert routes['tasks.holds.*'] == {'queue': 'holds'}
        assert routes['tasks.bookings.*'] == {'queue': 'bookings'}
