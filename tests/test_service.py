from conftest import FakeController, FakeScraper, wait_until
from relaywatch.local.errors import LaunchError
from relaywatch.local.service import LifecycleGuard, LifecycleState, SupervisorService
from relaywatch.local.supervisor import Supervisor, SupervisorState


def fake_factory(controller):
    def build(config):
        return Supervisor(config, controller=controller, scraper=FakeScraper())
    return build


def test_compare_and_set_only_from_expected_state():
    guard = LifecycleGuard()

    assert guard.compare_and_set(LifecycleState.RUNNING, LifecycleState.STOPPING) is False
    assert guard.compare_and_set(LifecycleState.STOPPED, LifecycleState.STARTING) is True
    assert guard.state is LifecycleState.STARTING


def test_start_then_stop(make_config):
    controller = FakeController()
    service = SupervisorService(make_config(), factory=fake_factory(controller))

    assert service.start() is True
    assert service.start() is False
    assert wait_until(lambda: len(controller.handles) == 1)

    assert service.stop(timeout=5) is True

    assert service.state is LifecycleState.STOPPED
    assert service.supervisor.state is SupervisorState.STOPPED
    assert controller.stopped == controller.handles
    assert service.error is None


def test_stop_when_not_running_is_ignored(make_config):
    service = SupervisorService(make_config(), factory=fake_factory(FakeController()))

    assert service.stop() is False


def test_service_returns_to_stopped_when_supervisor_fails(make_config):
    service = SupervisorService(make_config(), factory=fake_factory(FakeController(launch_error=True)))

    assert service.start() is True
    service.join(5)

    assert wait_until(lambda: service.state is LifecycleState.STOPPED)
    assert isinstance(service.error, LaunchError)
    assert service.stop() is False


def test_service_can_be_restarted(make_config):
    controller = FakeController()
    service = SupervisorService(make_config(), factory=fake_factory(controller))

    assert service.start() is True
    assert wait_until(lambda: len(controller.handles) == 1)
    assert service.stop(timeout=5) is True
    assert service.start() is True
    assert wait_until(lambda: len(controller.handles) == 2)
    assert service.stop(timeout=5) is True
