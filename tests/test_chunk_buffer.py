from meetflow.services.realtime.chunk_buffer import ChunkBuffer


def test_seals_once_window_elapses(clock):
    buffer = ChunkBuffer(90.0, clock=clock)

    assert buffer.append(b"\x01\x00" * 10) is None
    clock.advance(45)
    assert buffer.append(b"\x02\x00" * 10) is None
    clock.advance(45)
    sealed = buffer.append(b"\x03\x00" * 10, client_timestamp=12.5)

    assert sealed is not None
    assert sealed.chunk_index == 0
    assert sealed.data == b"\x01\x00" * 10 + b"\x02\x00" * 10 + b"\x03\x00" * 10
    assert sealed.client_timestamp == 12.5
    assert sealed.forced is False
    assert buffer.byte_length == 0
    assert buffer.next_chunk_index == 1


def test_window_restarts_at_first_append_after_seal(clock):
    buffer = ChunkBuffer(10.0, clock=clock)
    buffer.append(b"ab")
    clock.advance(10)
    assert buffer.append(b"cd").chunk_index == 0

    clock.advance(100)
    assert buffer.append(b"ef") is None
    clock.advance(9)
    assert buffer.append(b"gh") is None
    clock.advance(1)
    assert buffer.append(b"ij").chunk_index == 1


def test_forced_flush_seals_early_and_indices_stay_dense(clock):
    buffer = ChunkBuffer(90.0, clock=clock)
    buffer.append(b"aa")
    forced = buffer.append(b"bb", forced=True)
    assert forced.forced is True
    assert forced.chunk_index == 0

    buffer.append(b"cc")
    remainder = buffer.flush()
    assert remainder.chunk_index == 1
    assert remainder.data == b"cc"


def test_empty_buffer_never_seals(clock):
    buffer = ChunkBuffer(5.0, clock=clock)
    assert buffer.flush() is None
    clock.advance(60)
    assert buffer.append(b"", forced=True) is None
    assert buffer.next_chunk_index == 0
    assert buffer.elapsed() == 0.0


def test_concatenation_preserves_every_byte(clock):
    buffer = ChunkBuffer(3.0, clock=clock)
    fragments = [bytes([i]) * (i + 1) for i in range(12)]
    sealed = []
    for fragment in fragments:
        result = buffer.append(fragment)
        if result is not None:
            sealed.append(result)
        clock.advance(1)
    tail = buffer.flush()
    if tail is not None:
        sealed.append(tail)

    assert b"".join(s.data for s in sealed) == b"".join(fragments)
    assert [s.chunk_index for s in sealed] == list(range(len(sealed)))


def test_seals_when_buffered_audio_fills_the_window(clock):
    # 16 kHz mono 16-bit: one second is 32000 bytes.
    buffer = ChunkBuffer(10.0, clock=clock, bytes_per_second=32000)
    assert buffer.append(b"\x00" * 32000 * 6) is None
    assert buffer.nominal_duration() == 6.0

    sealed = buffer.append(b"\x00" * 32000 * 4)
    assert sealed is not None
    assert len(sealed.data) == 32000 * 10
    assert buffer.nominal_duration() == 0.0
    assert buffer.elapsed() == 0.0


def test_short_fragments_never_seal_without_time_passing(clock):
    buffer = ChunkBuffer(10.0, clock=clock, bytes_per_second=32000)
    for _ in range(9):
        assert buffer.append(b"\x00" * 32000) is None
    assert buffer.nominal_duration() == 9.0
