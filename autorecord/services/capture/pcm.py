# -------------------------------------------------------------- #
# PCM Frame Arithmetic
# -------------------------------------------------------------- #


def calculate_frame_size(
    samples_per_frame: int,
    channels: int = 2,
    bits_per_sample: int = 16,
) -> int:
    """
    Calculate the number of bytes in one PCM frame.

    Example:
        >>> calculate_frame_size(960, channels=2)  # 20ms of Discord PCM
        3840
    """
    return samples_per_frame * channels * (bits_per_sample // 8)


def calculate_frame_interval_ms(samples_per_frame: int, sample_rate: int = 48000) -> float:
    """
    Calculate the wall-clock duration of one frame in milliseconds.

    Example:
        >>> calculate_frame_interval_ms(960, 48000)
        20.0
    """
    if sample_rate <= 0:
        raise ValueError("sample_rate must be positive")
    return samples_per_frame / sample_rate * 1000
