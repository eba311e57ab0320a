"""Commission and compensation engines for affiliates, sales reps and providers."""
