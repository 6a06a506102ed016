"""JobFleet — job orchestration and demand matching for edge worker fleets."""
