from picokeys.led import BlinkFields, BlinkMode, Led, LedColor, blink_fields


def test_blink_fields_processing():
    assert blink_fields(BlinkMode.PROCESSING) == BlinkFields(LedColor.GREEN, 50, 50)


def test_blink_fields_not_mounted_and_button():
    assert blink_fields(BlinkMode.NOT_MOUNTED) == BlinkFields(LedColor.RED, 250, 250)
    assert blink_fields(BlinkMode.BUTTON) == BlinkFields(LedColor.YELLOW, 1000, 100)
    assert blink_fields(BlinkMode.SUSPENDED) == BlinkFields(LedColor.BLUE, 500, 1000)


def test_blink_fields_always_off():
    assert blink_fields(BlinkMode.ALWAYS_OFF) == BlinkFields(LedColor.OFF, 0, 0)


def test_blink_fields_always_on_is_white():
    assert blink_fields(BlinkMode.ALWAYS_ON).color is LedColor.WHITE


def test_tick_waits_for_interval_then_toggles():
    written = []
    led = Led(driver=written.append, mode=BlinkMode.PROCESSING)
    assert led.tick(10) is None
    assert written == []
    assert led.tick(50) is LedColor.OFF
    assert led.tick(60) is None
    assert led.tick(100) is LedColor.GREEN
    assert led.tick(150) is LedColor.OFF
    assert written == [LedColor.OFF, LedColor.GREEN, LedColor.OFF]


def test_inverted_led_starts_with_color():
    written = []
    led = Led(driver=written.append, inverted=True, mode=BlinkMode.MOUNTED)
    assert led.tick(250) is LedColor.GREEN
    assert led.tick(500) is LedColor.OFF
    assert written == [LedColor.GREEN, LedColor.OFF]


def test_set_blink_changes_color():
    written = []
    led = Led(driver=written.append)
    led.set_blink(BlinkMode.BUTTON)
    assert led.mode == BlinkMode.BUTTON
    led.tick(100)
    assert led.tick(1100) is LedColor.YELLOW


def test_off_writes_off():
    written = []
    led = Led(driver=written.append)
    led.off()
    assert written == [LedColor.OFF]


def test_default_mode_is_not_mounted():
    written = []
    led = Led(driver=written.append)
    assert led.tick(249) is None
    assert led.tick(250) is LedColor.OFF
    assert led.tick(500) is LedColor.RED