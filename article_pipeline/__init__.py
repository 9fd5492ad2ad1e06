"""Article AI-processing pipeline: rewrite or generate articles with rehosted images."""
