def test_public_imports() -> None:
    # A lightweight contract test: keep the most common imports stable.
    import sqwpy

    assert hasattr(sqwpy, "__version__")

    from sqwpy import (  # noqa: F401
        SampledCorrelations,
        SamplingParameters,
        intensities_interpolated,
        intensity_formula,
    )


def test_errors_share_a_base_class() -> None:
    from sqwpy import errors

    for exc in (
        errors.ConfigurationError,
        errors.ShapeMismatch,
        errors.InvalidTemperature,
        errors.CorrelationNotFound,
    ):
        assert issubclass(exc, errors.SqwError)

    assert issubclass(errors.CorrelationNotFound, LookupError)
    assert issubclass(errors.ConfigurationError, ValueError)
