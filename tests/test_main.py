"""
Unit tests for the operator handlers in main module.
"""

import kopf
import pytest
from unittest.mock import Mock, patch

import main
from admission import AdmissionResult
from k8s_client import K8sServerError
from validation import SecretNotFoundError
from conftest import build_application


@pytest.fixture
def validator():
    mock_validator = Mock()
    with patch.object(main, '_validator', mock_validator):
        yield mock_validator


@pytest.fixture
def tracker():
    mock_tracker = Mock()
    with patch.object(main, '_tracker', mock_tracker):
        yield mock_tracker


class TestAdmissionVerdict:
    """Test routing of admission operations."""

    def test_create(self, validator):
        body = build_application()
        main.admission_verdict("CREATE", body, None)
        validator.validate_create.assert_called_once_with(body)

    def test_update(self, validator):
        old, new = build_application(), build_application(destination_namespace="backend")
        main.admission_verdict("UPDATE", new, old)
        validator.validate_update.assert_called_once_with(old, new)

    def test_delete(self, validator):
        body = build_application()
        main.admission_verdict("DELETE", body, body)
        validator.validate_delete.assert_called_once_with(body)


class TestValidateApplication:
    """Test the admission webhook handler."""

    def test_allowed_with_warnings(self, validator):
        validator.validate_create.return_value = AdmissionResult(True, "ok", ["domain not set"])
        warnings = []

        main.validate_application(body=build_application(), old=None, operation="CREATE", warnings=warnings)

        assert warnings == ["domain not set"]

    def test_denied(self, validator):
        validator.validate_create.return_value = AdmissionResult(False, "No users have admin access")

        with pytest.raises(kopf.AdmissionError) as exc_info:
            main.validate_application(body=build_application(), old=None, operation="CREATE", warnings=[])

        assert "No users have admin access" in str(exc_info.value)
        assert exc_info.value.code == 403


class TestReconcileApplication:
    """Test the namespace tracking handler."""

    def test_reconcile(self, tracker):
        main.reconcile_application(name="my-app", namespace="team-a")
        tracker.reconcile.assert_called_once_with("team-a", "my-app")

    @pytest.mark.parametrize("error", [
        SecretNotFoundError("secret missing"),
        K8sServerError("unavailable", 503),
    ])
    def test_failure_is_retried(self, tracker, error):
        tracker.reconcile.side_effect = error

        with pytest.raises(kopf.TemporaryError):
            main.reconcile_application(name="my-app", namespace="team-a")


class TestForgetApplication:
    """Test metric cleanup on Application removal events."""

    def test_deleted_event(self, tracker):
        main.forget_application(type="DELETED", body=build_application(server="in-cluster"))

        app = tracker.forget.call_args.args[0]
        assert (app.name, app.namespace, app.destination.server) == ("my-app", "team-a", "in-cluster")

    @pytest.mark.parametrize("event_type", ["ADDED", "MODIFIED", None])
    def test_other_events_ignored(self, tracker, event_type):
        main.forget_application(type=event_type, body=build_application())
        tracker.forget.assert_not_called()
