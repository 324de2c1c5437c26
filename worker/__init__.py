"""Queue worker that renders tile jobs through the APS pipeline."""
