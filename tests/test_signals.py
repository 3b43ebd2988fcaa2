from rgbdfuse.system.signals import ControlSignals


def test_requests_collapse_and_reset_on_read():
    s = ControlSignals()
    s.request_capture()
    s.request_capture()
    s.request_capture()

    assert s.consume_capture() is True
    assert s.consume_capture() is False
    assert s.consume_clear() is False


def test_clear_and_quit_are_independent():
    s = ControlSignals()
    s.request_clear()
    assert not s.should_quit
    assert s.consume_clear() is True
    s.request_quit()
    assert s.should_quit
    assert s.consume_capture() is False
