from loyalty.services.mocks.accrual import AccrualMock, MockReply, accrual_mock_instance

__all__ = ["AccrualMock", "MockReply", "accrual_mock_instance"]
