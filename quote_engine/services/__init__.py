"""Rate cache, currency conversion and fee/weight/classification resolvers."""
